from app.core.middleware.api_errors import add_api_unhandled_error_middleware
from app.core.middleware.request_id import add_request_id_middleware

__all__ = [
    "add_api_unhandled_error_middleware",
    "add_request_id_middleware",
]
