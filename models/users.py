from pydantic import Field, EmailStr
from typing import Annotated, List

import pymongo
from beanie import Document, Indexed

from schema.users import UserInDB


class User(Document):
    """Persisted user account.
    """
    user_id: Annotated[int, Indexed(unique=True)]
    username: Annotated[str, Field(max_length=50, min_length=2)]
    email: Annotated[EmailStr, Indexed(index_type=pymongo.ASCENDING, unique=True), Field(max_length=100)]
    first_name: Annotated[str, Field(default="", max_length=50)]
    last_name: Annotated[str, Field(default="", max_length=50)]
    password: str
    is_active: Annotated[bool, Field(default=True)]
    roles: Annotated[List[str], Field(default=[])]  # Role codes assigned to the user

    def to_schema(self) -> UserInDB:
        return UserInDB(**self.model_dump(exclude={"id", "revision_id"}))

    class Settings:
        name = "users"
