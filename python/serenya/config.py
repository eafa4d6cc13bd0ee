"""Application settings loaded from environment variables.

Environment Configuration:
    SERENYA_ENV: Deployment environment (local | test | staging | prod)
    DATABASE_URL: PostgreSQL connection string (required)

Redis / Celery Configuration:
    REDIS_URL: Redis connection string (required for worker)
    CELERY_BROKER_URL: Celery broker URL (defaults to REDIS_URL)
    CELERY_RESULT_BACKEND: Celery result backend URL (defaults to REDIS_URL)

AWS Configuration (required in staging/prod):
    AWS_REGION: Region for KMS, S3, Secrets Manager and Bedrock clients
    KMS_KEY_ID: Master key used to wrap field data keys
    TEMP_BUCKET_NAME: Bucket for uploads, result artifacts and chat responses
    API_SECRETS_ARN: Secrets Manager secret holding jwtSecret
    EMAIL_HASH_SALT: Environment-wide salt for email lookup hashes

Local and test environments run against in-memory fakes for every AWS
collaborator when the corresponding setting is absent.
"""

from enum import Enum
from functools import lru_cache
from typing import Annotated

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Application configuration.

    Validation rules:
    - DATABASE_URL is always required
    - KMS_KEY_ID, TEMP_BUCKET_NAME, API_SECRETS_ARN, EMAIL_HASH_SALT are
      required in staging and prod
    - USE_MOCK_AI is refused in prod
    - TTLs, cache sizes and limits must be >= 1
    """

    serenya_env: Environment = Field(default=Environment.LOCAL, alias="SERENYA_ENV")
    database_url: Annotated[str, Field(alias="DATABASE_URL")]

    # Redis / Celery settings
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    celery_broker_url: str | None = Field(default=None, alias="CELERY_BROKER_URL")
    celery_result_backend: str | None = Field(default=None, alias="CELERY_RESULT_BACKEND")

    # AWS collaborators
    aws_region: str = Field(default="eu-west-1", alias="AWS_REGION")
    kms_key_id: str | None = Field(default=None, alias="KMS_KEY_ID")
    temp_bucket_name: str | None = Field(default=None, alias="TEMP_BUCKET_NAME")
    api_secrets_arn: str | None = Field(default=None, alias="API_SECRETS_ARN")
    bedrock_model_id: str = Field(
        default="anthropic.claude-3-haiku-20240307-v1:0", alias="BEDROCK_MODEL_ID"
    )
    use_mock_ai: bool = Field(default=False, alias="USE_MOCK_AI")

    # Hashing
    email_hash_salt: str | None = Field(default=None, alias="EMAIL_HASH_SALT")

    # Auth (HS256 tokens signed with jwtSecret from the secret store)
    jwt_issuer: str = Field(default="serenya.health", alias="JWT_ISSUER")
    jwt_audience: str = Field(default="serenya-app", alias="JWT_AUDIENCE")

    # Caches
    data_key_cache_ttl_s: int = Field(default=3600, alias="DATA_KEY_CACHE_TTL_S")
    data_key_cache_max_entries: int = Field(default=100, alias="DATA_KEY_CACHE_MAX_ENTRIES")
    secrets_cache_ttl_s: int = Field(default=300, alias="SECRETS_CACHE_TTL_S")

    # Bedrock circuit breaker
    llm_breaker_failure_threshold: int = Field(default=5, alias="LLM_BREAKER_FAILURE_THRESHOLD")
    llm_breaker_recovery_s: int = Field(default=30, alias="LLM_BREAKER_RECOVERY_S")

    # Job lifecycle
    job_timeout_s: int = Field(default=180, alias="JOB_TIMEOUT_S")
    max_retry_attempts: int = Field(default=3, alias="MAX_RETRY_ATTEMPTS")
    max_upload_bytes: int = Field(default=5 * 1024 * 1024, alias="MAX_UPLOAD_BYTES")  # 5 MB

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def validate_required_settings(self) -> "Settings":
        """Ensure deployed environments are fully wired to AWS."""
        for name in (
            "DATA_KEY_CACHE_TTL_S",
            "DATA_KEY_CACHE_MAX_ENTRIES",
            "SECRETS_CACHE_TTL_S",
            "LLM_BREAKER_FAILURE_THRESHOLD",
            "LLM_BREAKER_RECOVERY_S",
            "JOB_TIMEOUT_S",
            "MAX_RETRY_ATTEMPTS",
            "MAX_UPLOAD_BYTES",
        ):
            if getattr(self, name.lower()) < 1:
                raise ValueError(f"{name} must be >= 1")

        # processing_jobs.retry_count is constrained to 0..3
        if self.max_retry_attempts > 3:
            raise ValueError("MAX_RETRY_ATTEMPTS must be <= 3")

        if self.is_deployed:
            missing = [
                alias
                for alias, value in (
                    ("KMS_KEY_ID", self.kms_key_id),
                    ("TEMP_BUCKET_NAME", self.temp_bucket_name),
                    ("API_SECRETS_ARN", self.api_secrets_arn),
                    ("EMAIL_HASH_SALT", self.email_hash_salt),
                )
                if not value
            ]
            if missing:
                raise ValueError(
                    f"Missing required settings for SERENYA_ENV={self.serenya_env.value}: "
                    f"{', '.join(missing)}"
                )

        if self.serenya_env == Environment.PROD and self.use_mock_ai:
            raise ValueError("USE_MOCK_AI cannot be enabled for SERENYA_ENV=prod")

        return self

    @property
    def is_deployed(self) -> bool:
        """Whether this process talks to real AWS services."""
        return self.serenya_env in (Environment.STAGING, Environment.PROD)

    @property
    def effective_celery_broker_url(self) -> str | None:
        """Return Celery broker URL, falling back to REDIS_URL if not set."""
        return self.celery_broker_url or self.redis_url

    @property
    def effective_celery_result_backend(self) -> str | None:
        """Return Celery result backend URL, falling back to REDIS_URL if not set."""
        return self.celery_result_backend or self.redis_url


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Raises:
        ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()
