"""Dialect helpers for repositories that emit dialect-specific SQL."""

from __future__ import annotations

from sqlalchemy.orm import Session


def get_dialect_name(session: Session, default: str = "sqlite") -> str:
    """Return the bound engine's dialect name, or ``default`` when unbound."""
    try:
        bind = session.get_bind()
    except Exception:
        return default
    dialect = getattr(bind, "dialect", None)
    return getattr(dialect, "name", None) or default


def is_unique_violation(exc: Exception) -> bool:
    """Best-effort detection of unique-constraint failures across PostgreSQL and SQLite."""
    message = str(getattr(exc, "orig", exc)).lower()
    return "unique" in message or "duplicate key" in message
