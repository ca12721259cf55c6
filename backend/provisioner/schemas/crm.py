"""Pydantic schemas for manual CRM provisioning"""
from pydantic import BaseModel, EmailStr
from typing import Optional


class CreateAccountRequest(BaseModel):
    firstName: str
    lastName: str = ""
    email: EmailStr
    phone: Optional[str] = None
    businessName: Optional[str] = None


class CreateAccountFromOrderRequest(BaseModel):
    name: str
    email: EmailStr
    phone: Optional[str] = None
    businessName: Optional[str] = None
