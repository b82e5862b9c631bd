"""SQLAlchemy declarative base shared by every attribution table."""
from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass
