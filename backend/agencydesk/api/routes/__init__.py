# API routes
from agencydesk.api.routes import health
from agencydesk.api.routes import auth
from agencydesk.api.routes import agencies
from agencydesk.api.routes import members
from agencydesk.api.routes import invitations
from agencydesk.api.routes import todos
from agencydesk.api.routes import reminders
from agencydesk.api.routes import activity

__all__ = ["health", "auth", "agencies", "members", "invitations", "todos", "reminders", "activity"]
