"""Repository layer with agency isolation enforcement."""

from agencydesk.repositories.base_repo import (
    AgencyScopedRepository,
    TenantIsolationError,
)

__all__ = ["AgencyScopedRepository", "TenantIsolationError"]
