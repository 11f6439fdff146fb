from .request_id import RequestIDMiddleware, get_request_id, get_client_ip
from .logging import AccessLogMiddleware

__all__ = [
    "RequestIDMiddleware",
    "AccessLogMiddleware",
    "get_request_id",
    "get_client_ip",
]
