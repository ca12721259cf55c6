"""Pydantic schemas for email endpoints"""
from pydantic import BaseModel, EmailStr
from typing import Optional


class SendTestEmailRequest(BaseModel):
    customerEmail: EmailStr
    customerName: Optional[str] = None
