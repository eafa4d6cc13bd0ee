"""Bearer-token authentication.

Provides:
- TokenVerifier protocol and SecretTokenVerifier (HS256, jwtSecret)
- AuthMiddleware, Viewer and the get_viewer dependency
"""

from serenya.auth.middleware import AuthMiddleware, Viewer, get_viewer
from serenya.auth.verifier import SecretTokenVerifier, TokenVerifier

__all__ = ["AuthMiddleware", "Viewer", "get_viewer", "SecretTokenVerifier", "TokenVerifier"]
