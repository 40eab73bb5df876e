"""Agency Desk: multi-tenant agency task-management backend."""

__version__ = "0.1.0"
