# backend/portal/repositories/base_repository.py
"""
Base Repository Pattern for the nutrition portal.

Repositories own data access only. They flush so generated values are
visible, but never commit: transaction boundaries belong to the service layer.
"""

import logging
from typing import Any, Generic, Optional, Type, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..database.session_utils import get_dialect_name

T = TypeVar("T")

logger = logging.getLogger(__name__)


class BaseRepository(Generic[T]):
    """
    Common CRUD operations shared by every repository.

    Attributes:
        db: SQLAlchemy session
        model: SQLAlchemy model class
    """

    def __init__(self, db: Session, model: Type[T]):
        self.db = db
        self.model = model
        self.logger = logging.getLogger(f"{__name__}.{model.__name__}")

    @property
    def dialect_name(self) -> str:
        return get_dialect_name(self.db)

    def get_by_id(self, id: str) -> Optional[T]:
        try:
            return self.db.get(self.model, id)
        except SQLAlchemyError as e:
            self.logger.error(f"Error getting {self.model.__name__} by id {id}: {str(e)}")
            raise RepositoryException(f"Failed to retrieve {self.model.__name__}: {str(e)}")

    def create(self, **kwargs: Any) -> T:
        """
        Create a new entity.

        The insert runs inside a SAVEPOINT so a constraint violation only
        discards this row, not the caller's transaction.
        """
        entity = self.model(**kwargs)
        return self.add(entity)

    def add(self, entity: T) -> T:
        try:
            with self.db.begin_nested():
                self.db.add(entity)
                self.db.flush()
            return entity
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            self.logger.error(f"Error creating {self.model.__name__}: {str(e)}")
            raise RepositoryException(f"Failed to create {self.model.__name__}: {str(e)}")

    def update(self, id: str, **kwargs: Any) -> Optional[T]:
        entity = self.get_by_id(id)
        if entity is None:
            return None
        for key, value in kwargs.items():
            if hasattr(entity, key):
                setattr(entity, key, value)
        self.flush()
        return entity

    def exists(self, **kwargs: Any) -> bool:
        return self.db.query(self.model).filter_by(**kwargs).first() is not None

    def count(self, **kwargs: Any) -> int:
        return self.db.query(self.model).filter_by(**kwargs).count()

    def flush(self) -> None:
        """Flush pending ORM changes."""
        try:
            self.db.flush()
        except IntegrityError:
            raise
        except SQLAlchemyError as e:
            self.logger.error(f"Error flushing {self.model.__name__}: {str(e)}")
            raise RepositoryException(f"Failed to persist {self.model.__name__}: {str(e)}")
