"""Token verification.

Access tokens are HS256 JWTs signed with the jwtSecret field of the API
secrets entry in Secrets Manager. The secret is read through SecretStore,
so rotation is picked up once its cache entry expires.
"""

from typing import Any, Protocol

import jwt
from jwt.exceptions import (
    DecodeError,
    ExpiredSignatureError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidSignatureError,
    InvalidTokenError,
)

from serenya.errors import ApiError, ApiErrorCode
from serenya.logging import get_logger
from serenya.services.secrets import SecretsError, SecretStore

logger = get_logger(__name__)

# Clock skew allowance in seconds
CLOCK_SKEW_SECONDS = 60

ALGORITHM = "HS256"
JWT_SECRET_FIELD = "jwtSecret"


class TokenVerifier(Protocol):
    """Protocol for token verification."""

    def verify(self, token: str) -> dict[str, Any]:
        """Verify token and return decoded claims.

        Raises:
            ApiError(E_UNAUTHENTICATED): Token is invalid, expired, or malformed.
            ApiError(E_AUTH_UNAVAILABLE): The signing secret cannot be loaded.
        """
        ...


class SecretTokenVerifier:
    """Verifies HS256 access tokens.

    Validates:
    - Signature with jwtSecret
    - exp with 60s clock skew
    - iss and aud against settings
    - sub present (the viewer's user id)
    """

    def __init__(self, secret_store: SecretStore, secret_name: str, issuer: str, audience: str):
        self.secret_store = secret_store
        self.secret_name = secret_name
        self.issuer = issuer
        self.audience = audience

    def _signing_secret(self) -> str:
        try:
            secret = self.secret_store.get_secret(self.secret_name).get(JWT_SECRET_FIELD)
        except SecretsError as e:
            logger.error("auth_secret_unavailable", error=str(e))
            raise ApiError(
                ApiErrorCode.E_AUTH_UNAVAILABLE, "Authentication service unavailable"
            ) from e
        if not secret:
            logger.error("auth_secret_unavailable", error="jwtSecret missing")
            raise ApiError(ApiErrorCode.E_AUTH_UNAVAILABLE, "Authentication service unavailable")
        return secret

    def verify(self, token: str) -> dict[str, Any]:
        secret = self._signing_secret()

        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                leeway=CLOCK_SKEW_SECONDS,
                options={"require": ["exp", "iss", "sub"]},
            )
        except ExpiredSignatureError as e:
            logger.warning("auth_failure", reason="expired_token")
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Token expired") from e
        except InvalidSignatureError as e:
            logger.warning("auth_failure", reason="invalid_signature")
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Invalid token signature") from e
        except InvalidIssuerError as e:
            logger.warning("auth_failure", reason="invalid_issuer")
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Invalid token issuer") from e
        except InvalidAudienceError as e:
            logger.warning("auth_failure", reason="invalid_audience")
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Invalid token audience") from e
        except DecodeError as e:
            logger.warning("auth_failure", reason="decode_error")
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Invalid token format") from e
        except InvalidTokenError as e:
            logger.warning("auth_failure", reason="invalid_token", error=str(e))
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Invalid token") from e

        sub = payload.get("sub")
        if not isinstance(sub, str) or not sub.strip():
            logger.warning("auth_failure", reason="missing_sub")
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Invalid token: missing sub")
        if "_" in sub:
            # Chat job ids use "_" as their separator
            logger.warning("auth_failure", reason="invalid_sub")
            raise ApiError(ApiErrorCode.E_UNAUTHENTICATED, "Invalid token: malformed sub")

        return payload
