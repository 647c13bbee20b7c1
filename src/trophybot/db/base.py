"""Declarative base and dialect helpers shared by all ORM models."""

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Base class for trophybot models."""


def dialect_insert(session: AsyncSession, model: type[Base]):  # noqa: ANN201
    """INSERT for the session's backend, so ``on_conflict_do_nothing`` is available."""
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(model)
    return sqlite_insert(model)
