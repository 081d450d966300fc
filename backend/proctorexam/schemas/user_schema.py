from fastapi_users import schemas
from proctorexam.models.user_model import UserRole
import uuid


class UserRead(schemas.BaseUser[uuid.UUID]):
    full_name: str
    role: UserRole

class UserCreate(schemas.BaseUserCreate):
    full_name: str
    role: UserRole = UserRole.STUDENT # Default role on creation

class UserUpdate(schemas.BaseUserUpdate):
    full_name : str | None = None
    role: UserRole | None = None
    is_superuser : bool = False

