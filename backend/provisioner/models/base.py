"""Declarative base shared by all models"""
import uuid
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def generate_uuid() -> str:
    """Primary key factory for string UUID columns"""
    return str(uuid.uuid4())
