"""
Authentication and authorization.

- session_validator: opaque session tokens -> SessionIdentity
- agency_context: SessionIdentity -> AgencyAuthContext
- route_auth: decorators that run both before a handler
"""
