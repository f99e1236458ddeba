"""
Module: billing_server.db.base
Responsibility: Declarative base for the reference server's ORM models.
    Provides the string primary key convention and a type annotation map
    that stores Decimal amounts losslessly.
Architecture position: Server > DB. Lowest-level import target of the
    server; imports nothing from models or the gateway.

Invariants enforced:
    - Decimal precision: Decimal columns are stored as their exact string
      form (DecimalString), so SQLite never rounds through float.
    - String ids: every row gets a uuid4 string id unless one is given.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import uuid4

from sqlalchemy import DateTime, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class DecimalString(TypeDecorator):
    """
    Decimal stored as its string representation.

    Guarantees:
        - process_bind_param: Decimal -> str on INSERT/UPDATE.
        - process_result_value: str -> Decimal on SELECT.
        - cache_ok=True enables SQLAlchemy statement caching.
    """

    impl = String(64)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is not None:
            return str(Decimal(value))
        return None

    def process_result_value(self, value, dialect):
        if value is not None:
            return Decimal(value)
        return None


def new_record_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """
    Declarative base for all server models.

    Guarantees:
        - id is a uuid4 string stored as String(36).
        - Decimal maps to DecimalString (exact).
        - datetime maps to DateTime(timezone=True).
    """

    type_annotation_map: ClassVar[dict] = {
        Decimal: DecimalString(),
        datetime: DateTime(timezone=True),
    }

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=new_record_id,
    )
