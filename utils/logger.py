"""Universal logfire setup for the application."""

import logfire

from logging import INFO, basicConfig


def configure_logging(token: str | None = None, environment: str = "production") -> None:
    """Configure logfire and route stdlib logging through it.

    Args:
        token (str | None): Logfire write token. Nothing is exported when missing.
        environment (str): Deployment environment reported with every record.
    """
    logfire.configure(
        token=token,
        send_to_logfire="if-token-present",
        service_name="ikhtibar-api",
        environment=environment,
    )
    basicConfig(level=INFO, handlers=[logfire.LogfireLoggingHandler()], force=True)


def instrument_libraries(app=None):
    """Instrument common libraries for better observability."""
    if app is not None:
        logfire.instrument_fastapi(app)
    logfire.instrument_pymongo()
    logfire.instrument_redis()
