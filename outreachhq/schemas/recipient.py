from pydantic import BaseModel, EmailStr
from datetime import datetime
from typing import Any, Dict, Optional


class RecipientBase(BaseModel):
    first_name: str
    last_name: Optional[str] = None
    email: EmailStr
    phone: Optional[str] = None
    notes: Optional[str] = None
    attributes: Optional[Dict[str, Any]] = None


class RecipientCreate(RecipientBase):
    pass


class RecipientUpdate(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    notes: Optional[str] = None
    attributes: Optional[Dict[str, Any]] = None


class RecipientResponse(RecipientBase):
    id: int
    display_name: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
