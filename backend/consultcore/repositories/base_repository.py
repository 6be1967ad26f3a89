# backend/consultcore/repositories/base_repository.py
"""
Base repository shared by all data access classes.

Repositories never commit: the service layer owns transaction boundaries and
commits status writes together with their dependent rows.
"""

import logging
from typing import Generic, List, Optional, Type, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Query, Session

from ..core.exceptions import RepositoryException
from ..database.session_utils import get_dialect_name

T = TypeVar("T")

logger = logging.getLogger(__name__)


class BaseRepository(Generic[T]):
    def __init__(self, db: Session, model: Type[T]):
        self.db = db
        self.model = model
        self.logger = logging.getLogger(f"{__name__}.{model.__name__}")

    @property
    def dialect_name(self) -> str:
        return get_dialect_name(self.db)

    def get_by_id(self, id: str, for_update: bool = False) -> Optional[T]:
        """
        Load one row by primary key.

        With ``for_update`` the row is re-read from the database even when the
        session already holds it, and locked on PostgreSQL. Status decisions
        must be made on this fresh copy, never on one loaded earlier.
        """
        try:
            query = self.db.query(self.model).filter(self.model.id == id)
            if for_update:
                query = query.populate_existing()
                if self.dialect_name == "postgresql":
                    query = query.with_for_update()
            return query.first()
        except SQLAlchemyError as exc:
            self.logger.error("Failed to load %s %s: %s", self.model.__name__, id, exc)
            raise RepositoryException(f"Failed to retrieve {self.model.__name__}") from exc

    def refresh(self, instance: T) -> None:
        self.db.refresh(instance)

    def flush(self) -> None:
        self.db.flush()

    def create(self, **kwargs) -> T:
        """Add a row and flush so its id and defaults are populated. Does not commit."""
        try:
            entity = self.model(**kwargs)
            self.db.add(entity)
            self.db.flush()
            return entity
        except IntegrityError as exc:
            self.logger.error("Integrity error creating %s: %s", self.model.__name__, exc)
            self.db.rollback()
            raise RepositoryException(f"Integrity constraint violated: {exc.orig}") from exc
        except SQLAlchemyError as exc:
            self.logger.error("Error creating %s: %s", self.model.__name__, exc)
            self.db.rollback()
            raise RepositoryException(f"Failed to create {self.model.__name__}") from exc

    def count(self, **criteria) -> int:
        try:
            return self.db.query(self.model).filter_by(**criteria).count()
        except SQLAlchemyError as exc:
            self.logger.error("Error counting %s: %s", self.model.__name__, exc)
            raise RepositoryException(f"Failed to count {self.model.__name__}") from exc

    def find_one_by(self, **criteria) -> Optional[T]:
        try:
            return self.db.query(self.model).filter_by(**criteria).first()
        except SQLAlchemyError as exc:
            self.logger.error("Error finding %s by %s: %s", self.model.__name__, criteria, exc)
            raise RepositoryException(f"Failed to find {self.model.__name__}") from exc

    def _build_query(self) -> Query:
        return self.db.query(self.model)

    def _execute_query(self, query: Query) -> List[T]:
        try:
            return query.all()
        except SQLAlchemyError as exc:
            self.logger.error("Query on %s failed: %s", self.model.__name__, exc)
            raise RepositoryException(f"Query on {self.model.__name__} failed") from exc
