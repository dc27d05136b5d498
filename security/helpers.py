"""Contains all security related helper functions and FastAPI dependencies
"""
import base64
import hashlib

from fastapi import HTTPException, Request, status, Depends
from fastapi.security import OAuth2PasswordBearer

from passlib.context import CryptContext

from typing import Annotated

from schema.users import UserInDB
from security.tokens import TokenService
from services.user_repository import UserRepository


pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="api/auth/login", auto_error=False)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verifies that `plain_password` and `hashed_password` are equal.

    Args:
        plain_password (str): The plain text password to verify.
        hashed_password (str): The hashed password to compare against.

    Returns:
        bool: True if the passwords match, False otherwise.
    """
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Generates a hash for the given password.

    Args:
        password (str): The plain text password to hash.

    Returns:
        str: The hashed password.
    """
    return pwd_context.hash(password)


def hash_refresh_secret(secret: str) -> str:
    """One way hash of a refresh secret, the only form ever persisted.

    Args:
        secret (str): The raw refresh secret handed to the client.

    Returns:
        str: Base64 encoded SHA-256 digest of the secret.
    """
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


async def authenticate_user(users: UserRepository, email: str, password: str) -> UserInDB | None:
    """Authenticates a user by their email and password.

    Args:
        users (UserRepository): Where to look the user up.
        email (str): The email of the user.
        password (str): The password of the user.

    Returns:
        UserInDB | None: The user if authentication is successful and the account is active, None otherwise.
    """
    user = await users.get_by_email(email)

    if not user:
        return None
    if not verify_password(password, user.password):
        return None
    if not user.is_active:
        return None
    return user


def get_token_service(request: Request) -> TokenService:
    return request.app.state.token_service


def get_user_repository(request: Request) -> UserRepository:
    return request.app.state.user_repository


async def get_current_user(
    request: Request,
    token: Annotated[str | None, Depends(oauth2_scheme)],
    token_service: Annotated[TokenService, Depends(get_token_service)],
    users: Annotated[UserRepository, Depends(get_user_repository)],
) -> UserInDB:
    """Get the current user from the Bearer access token.

    Raises:
        HTTPException: 401 when the token is missing, invalid or expired, or the user is unknown or inactive.

    Returns:
        UserInDB: The authenticated user.
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    if not token:
        raise credentials_exception

    result = token_service.validate_token(token)

    if result.is_expired:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer", "Token-Expired": "true"},
        )

    if not result.is_valid or result.claims.user_id is None:
        raise credentials_exception

    user = await users.get_by_id(result.claims.user_id)

    if user is None or not user.is_active:
        raise credentials_exception

    request.state.user = user  # Read by the audit middleware
    return user


def require_roles(*roles: str):
    """Build a dependency that only lets users holding one of `roles` through.

    Args:
        roles (str): Accepted role codes.

    Returns:
        Callable: FastAPI dependency returning the current user.
    """

    async def role_checker(
        current_user: Annotated[UserInDB, Depends(get_current_user)],
    ) -> UserInDB:
        if not set(roles).intersection(current_user.roles):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Not enough permissions",
            )
        return current_user

    return role_checker
