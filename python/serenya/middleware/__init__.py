"""HTTP middleware."""

from serenya.middleware.request_id import RequestIDMiddleware

__all__ = ["RequestIDMiddleware"]
