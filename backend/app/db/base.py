"""
Declarative base shared by all models
"""
from enum import Enum as PyEnum
from typing import Type

from sqlalchemy import Enum
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def enum_column_type(enum_cls: Type[PyEnum]) -> Enum:
    """Enum column persisted by value (``"medical"``), not by member name."""
    return Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=30,
    )
