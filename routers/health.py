"""Health check endpoint, excluded from auditing."""

from fastapi import APIRouter

router = APIRouter(
    prefix="/api/health",
    tags=["Health"],
)


@router.get("")
async def health():
    return {"status": "healthy"}
