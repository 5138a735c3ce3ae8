"""Error taxonomy shared by the services and the HTTP layer.

Each error carries the HTTP status it maps to; the app turns any
``ServiceError`` into ``{"detail": <message>}`` with that status.
"""


class ServiceError(Exception):
    status_code = 500
    default_detail = "Internal Server Error"

    def __init__(self, detail: str | None = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)


class InvalidRequest(ServiceError):
    status_code = 400
    default_detail = "Invalid request"


class InvalidProduct(ServiceError):
    status_code = 400
    default_detail = "Invalid product reference"


class Unauthorized(ServiceError):
    status_code = 401
    default_detail = "Unauthorized"


class Forbidden(ServiceError):
    status_code = 403
    default_detail = "Forbidden"


class NotFound(ServiceError):
    status_code = 404
    default_detail = "Not found"


class Conflict(ServiceError):
    status_code = 409
    default_detail = "Conflict"


class Internal(ServiceError):
    pass
