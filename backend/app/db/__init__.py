# backend/app/db/__init__.py

"""
Database Module

SQLAlchemy engine and session factory, ORM models for tenants, cases and the
provider sync trail, and the Pydantic response schemas.
"""

from app.db.database import Base, engine, SessionLocal, get_db
from app.db import models, schemas

__all__ = [
    'Base',
    'engine',
    'SessionLocal',
    'get_db',
    'models',
    'schemas'
]
