from datetime import datetime

from pydantic import BaseModel, EmailStr, Field


class UserPublic(BaseModel):
    id: int = Field(..., description="User id")
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    role: str = Field(..., description="Role: admin, driver or parent")
    created_at: datetime = Field(..., description="Account creation timestamp")
