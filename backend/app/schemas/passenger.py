from datetime import datetime
from typing import Optional
from pydantic import BaseModel, EmailStr, Field


class PassengerCreate(BaseModel):
    full_name: str = Field(..., min_length=1, max_length=255)
    id_number: str = Field(..., min_length=1, max_length=50)
    phone: Optional[str] = Field(None, max_length=20)
    email: Optional[EmailStr] = None


class PassengerResponse(BaseModel):
    id: int
    full_name: str
    id_number: str
    phone: Optional[str]
    email: Optional[str]
    created_at: datetime

    model_config = {"from_attributes": True}
