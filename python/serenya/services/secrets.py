"""Secret store access with a short in-memory TTL cache.

Secrets are JSON documents in AWS Secrets Manager (e.g. {"jwtSecret": ...}).
A fresh process starts with an empty cache and refetches on first use.
Failed lookups are never cached.
"""

import json
from abc import ABC, abstractmethod

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from serenya.cache import TTLCache
from serenya.logging import get_logger

logger = get_logger(__name__)


class SecretsError(Exception):
    """Raised when a secret cannot be fetched or parsed."""


class SecretsClientBase(ABC):
    """Interface to the secret store."""

    @abstractmethod
    def get_secret_string(self, name: str) -> str:
        """Return the raw SecretString for name.

        Raises:
            SecretsError: On any service failure.
        """
        ...


class BotoSecretsClient(SecretsClientBase):
    """AWS Secrets Manager client backed by boto3."""

    def __init__(self, region_name: str, client=None):
        self._client = client or boto3.client("secretsmanager", region_name=region_name)

    def get_secret_string(self, name: str) -> str:
        try:
            response = self._client.get_secret_value(SecretId=name)
        except (BotoCoreError, ClientError) as e:
            raise SecretsError(f"GetSecretValue failed for {name}: {e}") from e
        secret = response.get("SecretString")
        if secret is None:
            raise SecretsError(f"Secret {name} has no SecretString")
        return secret


class FakeSecretsClient(SecretsClientBase):
    """In-memory secret store for local development and tests."""

    def __init__(self, secrets: dict[str, dict] | None = None):
        self._secrets = {name: json.dumps(value) for name, value in (secrets or {}).items()}
        self.calls = 0

    def put_secret(self, name: str, value: dict) -> None:
        """Test helper: store a JSON secret."""
        self._secrets[name] = json.dumps(value)

    def get_secret_string(self, name: str) -> str:
        self.calls += 1
        if name not in self._secrets:
            raise SecretsError(f"ResourceNotFoundException: {name}")
        return self._secrets[name]


class SecretStore:
    """Cached JSON secret lookups.

    Args:
        client: The secret store client.
        cache: Cache of parsed secrets keyed by name.
    """

    def __init__(self, client: SecretsClientBase, cache: TTLCache):
        self._client = client
        self._cache = cache

    def get_secret(self, name: str) -> dict:
        """Return the parsed JSON secret, from cache when fresh.

        Raises:
            SecretsError: If the secret is unavailable or not a JSON object.
        """
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        raw = self._client.get_secret_string(name)
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error("secret_parse_failed", secret_name=name)
            raise SecretsError(f"Secret {name} is not valid JSON") from e
        if not isinstance(parsed, dict):
            raise SecretsError(f"Secret {name} is not a JSON object")

        self._cache.set(name, parsed)
        logger.info("secret_loaded", secret_name=name)
        return parsed
