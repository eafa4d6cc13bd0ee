"""Process-wide collaborators.

Each getter builds its collaborator once per process from settings:
- staging/prod: boto3-backed KMS, Secrets Manager, S3 and Bedrock clients
- local/test: in-memory fakes (and FakeLLMClient whenever USE_MOCK_AI is set)

Caches and the LLM circuit breaker are created here and injected into the
components that use them, so their lifetime is the process and a fresh worker
starts empty (and with a closed circuit).
reset_providers() drops everything (tests).
"""

from functools import lru_cache

from serenya.cache import TTLCache
from serenya.config import Environment, get_settings
from serenya.logging import get_logger
from serenya.services.crypto import EnvelopeCipher
from serenya.services.keys import BotoKmsClient, FakeKmsClient, KeyProvider
from serenya.services.llm import BedrockClient, CircuitBreaker, FakeLLMClient, LLMClient
from serenya.services.secrets import BotoSecretsClient, FakeSecretsClient, SecretStore
from serenya.storage import FakeObjectStore, ObjectStoreBase, S3ObjectStore

logger = get_logger(__name__)

LOCAL_MASTER_KEY_ID = "alias/serenya-local"
LOCAL_API_SECRETS_NAME = "serenya/local/api-secrets"
LOCAL_JWT_SECRET = "serenya-local-jwt-secret-not-for-deployment"
SECRETS_CACHE_MAX_ENTRIES = 20


@lru_cache
def get_object_store() -> ObjectStoreBase:
    """Temporary bucket client (S3 when TEMP_BUCKET_NAME is set)."""
    settings = get_settings()
    if settings.temp_bucket_name:
        return S3ObjectStore(bucket=settings.temp_bucket_name, region_name=settings.aws_region)
    return FakeObjectStore()


@lru_cache
def get_key_provider() -> KeyProvider:
    """Data-key provider with its own TTL cache."""
    settings = get_settings()
    cache = TTLCache(
        ttl_seconds=settings.data_key_cache_ttl_s,
        max_entries=settings.data_key_cache_max_entries,
    )
    if settings.kms_key_id:
        return KeyProvider(BotoKmsClient(region_name=settings.aws_region), cache)
    return KeyProvider(FakeKmsClient(), cache)


@lru_cache
def get_cipher() -> EnvelopeCipher:
    """Field cipher under the configured master key."""
    settings = get_settings()
    return EnvelopeCipher(get_key_provider(), settings.kms_key_id or LOCAL_MASTER_KEY_ID)


@lru_cache
def get_secret_store() -> SecretStore:
    """JSON secret lookups with a short TTL cache."""
    settings = get_settings()
    cache = TTLCache(
        ttl_seconds=settings.secrets_cache_ttl_s,
        max_entries=SECRETS_CACHE_MAX_ENTRIES,
    )
    if settings.api_secrets_arn:
        return SecretStore(BotoSecretsClient(region_name=settings.aws_region), cache)
    client = FakeSecretsClient({LOCAL_API_SECRETS_NAME: {"jwtSecret": LOCAL_JWT_SECRET}})
    return SecretStore(client, cache)


def get_api_secrets_name() -> str:
    """Name of the secret holding jwtSecret and other API secrets."""
    return get_settings().api_secrets_arn or LOCAL_API_SECRETS_NAME


@lru_cache
def get_llm_client() -> LLMClient:
    """Bedrock in deployed environments, the canned fake otherwise."""
    settings = get_settings()
    if settings.use_mock_ai or settings.serenya_env in (Environment.LOCAL, Environment.TEST):
        logger.info("llm_client_selected", client="fake")
        return FakeLLMClient()
    logger.info("llm_client_selected", client="bedrock", model_id=settings.bedrock_model_id)
    breaker = CircuitBreaker(
        failure_threshold=settings.llm_breaker_failure_threshold,
        recovery_timeout_s=settings.llm_breaker_recovery_s,
    )
    return BedrockClient(
        region_name=settings.aws_region, model_id=settings.bedrock_model_id, breaker=breaker
    )


def reset_providers() -> None:
    """Drop every cached collaborator. Useful for testing."""
    get_object_store.cache_clear()
    get_key_provider.cache_clear()
    get_cipher.cache_clear()
    get_secret_store.cache_clear()
    get_llm_client.cache_clear()
