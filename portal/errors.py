"""
Error taxonomy shared by the lifecycle services and the HTTP boundary.

Services raise these for rejected input and denied actions; lookups that find
nothing return None and the route decides whether that is a 404.
"""
from typing import Optional


class PortalError(Exception):
    status_code = 500
    default_detail = "Internal server error"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class Unauthenticated(PortalError):
    status_code = 401
    default_detail = "Unauthorized"


class Forbidden(PortalError):
    status_code = 403
    default_detail = "Access denied"


class NotFound(PortalError):
    status_code = 404
    default_detail = "Not found"


class InvalidInput(PortalError):
    status_code = 400
    default_detail = "Invalid input"


class Conflict(PortalError):
    status_code = 409
    default_detail = "Conflict"
