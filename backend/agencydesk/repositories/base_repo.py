"""
Base repository with strict agency isolation enforcement.

CRITICAL: In multi-tenant mode every read, update and delete is filtered by
the resolved agency and every create is stamped with it. No query can reach
another agency's rows through a repository.

The agency comes from the AgencyAuthContext, never from request data: an
agency_id in entity data is stripped and logged.
"""

import logging
from abc import ABC, abstractmethod
from typing import Generic, List, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Query, Session

from agencydesk.auth.agency_context import AgencyAuthContext, TenancyMode
from agencydesk.db_base import Base

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Base)

AGENCY_COLUMN = "agency_id"


class TenantIsolationError(Exception):
    """Raised when agency isolation is violated."""
    pass


class AgencyScopedRepository(Generic[T], ABC):
    """
    Repository scoped to the caller's agency.

    Legacy (single-tenant) contexts apply no agency filter and store
    agency_id as NULL; the decision is taken from ctx.tenancy_mode.
    """

    def __init__(self, db_session: Session, ctx: AgencyAuthContext):
        if ctx.tenancy_mode == TenancyMode.MULTI_TENANT and not ctx.agency_id:
            raise TenantIsolationError("Multi-tenant context without agency_id")

        self.db_session = db_session
        self.ctx = ctx
        self._model_class = self._get_model_class()

    @abstractmethod
    def _get_model_class(self) -> type[T]:
        """Return the SQLAlchemy model class for this repository."""
        pass

    @property
    def agency_id(self) -> Optional[str]:
        return self.ctx.agency_id

    def _enforce_agency_scope(self, query: Query) -> Query:
        if self.ctx.tenancy_mode == TenancyMode.LEGACY:
            return query
        return query.filter(getattr(self._model_class, AGENCY_COLUMN) == self.ctx.agency_id)

    def _strip_agency_id(self, entity_data: dict, operation: str) -> dict:
        if AGENCY_COLUMN in entity_data:
            provided = entity_data.pop(AGENCY_COLUMN)
            logger.warning(
                "agency_id found in entity data, removing it",
                extra={
                    "context_agency_id": self.ctx.agency_id,
                    "provided_agency_id": provided,
                    "operation": operation,
                    "entity_type": self._model_class.__name__,
                },
            )
        return entity_data

    def query(self) -> Query:
        """Base query for this model, scoped to the caller's agency."""
        return self._enforce_agency_scope(self.db_session.query(self._model_class))

    def get_by_id(self, entity_id: str) -> Optional[T]:
        return self.query().filter(self._model_class.id == entity_id).first()

    def get_all(self, limit: Optional[int] = None, offset: Optional[int] = None) -> List[T]:
        query = self.query().order_by(self._model_class.id.asc())
        if offset:
            query = query.offset(offset)
        if limit:
            query = query.limit(limit)
        return query.all()

    def create(self, entity_data: dict) -> T:
        """
        Create an entity stamped with the context agency.

        SECURITY: agency_id in entity_data is IGNORED.
        """
        entity_data = self._strip_agency_id(dict(entity_data), "create")
        entity_data[AGENCY_COLUMN] = self.ctx.agency_id

        entity = self._model_class(**entity_data)
        self.db_session.add(entity)
        try:
            self.db_session.commit()
            self.db_session.refresh(entity)
        except SQLAlchemyError as e:
            self.db_session.rollback()
            logger.error(
                "Failed to create entity",
                extra={
                    "agency_id": self.ctx.agency_id,
                    "entity_type": self._model_class.__name__,
                    "error": str(e),
                },
            )
            raise

        logger.info(
            "Entity created",
            extra={
                "agency_id": self.ctx.agency_id,
                "entity_id": entity.id,
                "entity_type": self._model_class.__name__,
            },
        )
        return entity

    def update(self, entity_id: str, entity_data: dict) -> Optional[T]:
        """Update an entity in the caller's agency. Returns None if not found there."""
        entity_data = self._strip_agency_id(dict(entity_data), "update")

        entity = self.get_by_id(entity_id)
        if entity is None:
            return None
        return self.apply(entity, entity_data)

    def apply(self, entity: T, entity_data: dict) -> T:
        """Apply changes to an entity already fetched through this repository."""
        self._assert_in_scope(entity, "apply")
        for key, value in self._strip_agency_id(dict(entity_data), "apply").items():
            if hasattr(entity, key):
                setattr(entity, key, value)
        try:
            self.db_session.commit()
            self.db_session.refresh(entity)
        except SQLAlchemyError as e:
            self.db_session.rollback()
            logger.error(
                "Failed to update entity",
                extra={
                    "agency_id": self.ctx.agency_id,
                    "entity_id": entity.id,
                    "error": str(e),
                },
            )
            raise

        logger.info(
            "Entity updated",
            extra={
                "agency_id": self.ctx.agency_id,
                "entity_id": entity.id,
                "entity_type": self._model_class.__name__,
            },
        )
        return entity

    def delete(self, entity_id: str) -> bool:
        """Delete an entity in the caller's agency. Returns False if not found there."""
        entity = self.get_by_id(entity_id)
        if entity is None:
            return False
        try:
            self.db_session.delete(entity)
            self.db_session.commit()
        except SQLAlchemyError as e:
            self.db_session.rollback()
            logger.error(
                "Failed to delete entity",
                extra={
                    "agency_id": self.ctx.agency_id,
                    "entity_id": entity_id,
                    "error": str(e),
                },
            )
            raise

        logger.info(
            "Entity deleted",
            extra={
                "agency_id": self.ctx.agency_id,
                "entity_id": entity_id,
                "entity_type": self._model_class.__name__,
            },
        )
        return True

    def count(self) -> int:
        return self.query().count()

    def exists(self, entity_id: str) -> bool:
        return self.get_by_id(entity_id) is not None

    def _assert_in_scope(self, entity: T, operation: str) -> None:
        if self.ctx.tenancy_mode == TenancyMode.LEGACY:
            return
        entity_agency_id = getattr(entity, AGENCY_COLUMN)
        if entity_agency_id != self.ctx.agency_id:
            logger.error(
                "Agency mismatch detected",
                extra={
                    "context_agency_id": self.ctx.agency_id,
                    "entity_agency_id": entity_agency_id,
                    "operation": operation,
                },
            )
            raise TenantIsolationError("Entity does not belong to the context agency")
