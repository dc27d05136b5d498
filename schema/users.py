"""Contains the schema definition for users and requests related to users
"""

from pydantic import BaseModel, Field, EmailStr

from typing import Annotated, List


class UserInDB(BaseModel):
    """Describes the structure of the user data stored in the database."""

    user_id: Annotated[int, Field(description="Unique identifier for the user")]
    username: Annotated[str, Field(min_length=2, max_length=50)]
    email: Annotated[EmailStr, Field(max_length=100)]
    first_name: Annotated[str, Field(default="", max_length=50)]
    last_name: Annotated[str, Field(default="", max_length=50)]
    password: str  # bcrypt hash, never the plain password
    is_active: Annotated[bool, Field(default=True)]
    roles: Annotated[List[str], Field(default=[])]  # Role codes e.g. 'system-admin', 'student'


class UserOut(BaseModel):
    """Describes the public view of a user returned by the API."""

    user_id: Annotated[int, Field(serialization_alias="userId")]
    username: str
    email: EmailStr
    first_name: Annotated[str, Field(default="", serialization_alias="firstName")]
    last_name: Annotated[str, Field(default="", serialization_alias="lastName")]
    is_active: Annotated[bool, Field(default=True, serialization_alias="isActive")]
    roles: Annotated[List[str], Field(default=[])]

    @classmethod
    def from_user(cls, user: UserInDB) -> "UserOut":
        return cls(**user.model_dump(exclude={"password"}))


class LoginRequest(BaseModel):
    """Describes the structure of the login request."""

    email: Annotated[EmailStr, Field(max_length=100)]
    password: Annotated[str, Field(min_length=1)]
