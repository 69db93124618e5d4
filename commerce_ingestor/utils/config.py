"""Configuration loader and settings helpers for commerce_ingestor."""

import base64
import json
import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from boto3.session import Session
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
)
from pydantic import (
    ValidationError as PydanticValidationError,
)
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..exceptions import ConfigurationError
from .retry import RetryConfig


logger = logging.getLogger(__name__)

ENV_PREFIX = "COMMERCE_"


def load_yaml_config(config_path: str | Path) -> dict[str, Any]:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Configuration dictionary

    Raises:
        ConfigurationError: If file not found or invalid YAML
    """
    try:
        with open(config_path) as f:
            config = yaml.safe_load(f)
            return config if config else {}
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {config_path}: {e}")


class AWSSettings(BaseModel):
    """AWS-specific configuration options derived from global settings."""

    model_config = ConfigDict(extra="forbid")

    region: str | None = None


class DatabasePoolSettings(BaseModel):
    """Connection pooling configuration for the SQLAlchemy engine."""

    model_config = ConfigDict(extra="forbid")

    pool_size: int = Field(default=5, ge=1)
    max_overflow: int = Field(default=10, ge=0)
    timeout: float = Field(default=30.0, gt=0)
    recycle_seconds: int = Field(default=1800, ge=0)
    pre_ping: bool = True


class SecretsManagerSettings(BaseModel):
    """AWS Secrets Manager integration settings."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    secret_name: str | None = None
    region: str | None = None
    profile: str | None = None
    endpoint_url: str | None = None
    overwrite_env: bool = False
    required_env: list[str] = Field(default_factory=list)


class ProviderSettings(BaseModel):
    """Per-provider API and webhook settings."""

    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    api_base_url: str | None = None
    api_version: str | None = None
    requests_per_second: int = Field(default=10, ge=1)
    page_size: int = Field(default=50, ge=1, le=250)
    webhook_secret: SecretStr | None = None

    def secret_value(self) -> str | None:
        """Return the plain webhook secret, or None when unset."""

        if self.webhook_secret is None:
            return None
        value = self.webhook_secret.get_secret_value()
        return value or None


class ShopifySettings(ProviderSettings):
    """Shopify Admin REST API defaults (leaky bucket refills at 2 calls/second)."""

    api_version: str | None = "2024-01"
    requests_per_second: int = Field(default=2, ge=1)
    page_size: int = Field(default=250, ge=1, le=250)


class StripeSettings(ProviderSettings):
    """Stripe API defaults."""

    api_base_url: str | None = "https://api.stripe.com/v1"
    requests_per_second: int = Field(default=25, ge=1)
    page_size: int = Field(default=100, ge=1, le=100)


class GoogleAnalyticsSettings(ProviderSettings):
    """GA4 Data API defaults."""

    api_base_url: str | None = "https://analyticsdata.googleapis.com/v1beta"
    requests_per_second: int = Field(default=10, ge=1)
    page_size: int = Field(default=100, ge=1, le=250)
    token_url: str = "https://oauth2.googleapis.com/token"
    client_id: str | None = None
    client_secret: SecretStr | None = None
    refresh_margin_seconds: int = Field(default=60, ge=0)


class KafkaConfig(BaseModel):
    """Kafka messaging configuration defaults and requirements."""

    topic: str = "commerce.metrics.updated"
    required_env: list[str] = Field(default_factory=list)


class MessagingConfig(BaseModel):
    """Messaging configuration section for runtime validation."""

    kafka: KafkaConfig = Field(default_factory=KafkaConfig)


class ServiceConfiguration(BaseModel):
    """Validated runtime configuration merged from base and environment overrides."""

    version: int = Field(default=1, ge=1)
    environment: str = "development"
    required_env: list[str] = Field(default_factory=list)
    messaging: MessagingConfig = Field(default_factory=MessagingConfig)
    secrets_manager: SecretsManagerSettings = Field(default_factory=SecretsManagerSettings)
    tracked_entities: dict[str, list[str]] = Field(default_factory=dict)

    @field_validator("environment")
    @classmethod
    def _normalize_environment(cls, value: str) -> str:
        return value.lower()


class GlobalSettings(BaseSettings):
    """Global application settings sourced from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        env_file=(".env", ".env.local", ".env.docker"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: str = "development"
    config_profile: str | None = None
    log_level: str = "INFO"
    redis_url: str | None = None
    database_url: str | None = None
    database: DatabasePoolSettings = DatabasePoolSettings()
    config_dir: Path = Path("config")
    aws: AWSSettings = AWSSettings()
    secrets_manager: SecretsManagerSettings = SecretsManagerSettings()
    api_keys: list[str] = Field(default_factory=list)

    user_agent: str = "commerce-ingestor/1.0 (+sync-engine)"
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    retry: RetryConfig = RetryConfig()
    default_lookback_days: int = Field(default=30, ge=1)
    sync_overlap_seconds: int = Field(default=300, ge=0)
    max_pages_per_entity: int = Field(default=1000, ge=1)
    replay_window_seconds: int = Field(default=300, ge=1)
    webhook_rate_limit: int = Field(default=100, ge=1)
    webhook_rate_window_seconds: int = Field(default=60, ge=1)
    stale_connection_hours: int = Field(default=24, ge=1)
    sync_lock_timeout_seconds: int = Field(default=3600, ge=1)

    shopify: ShopifySettings = ShopifySettings()
    stripe: StripeSettings = StripeSettings()
    google_analytics: GoogleAnalyticsSettings = GoogleAnalyticsSettings()

    kafka_bootstrap_servers: str | None = None
    kafka_topic: str = "commerce.metrics.updated"
    kafka_client_id: str = "commerce-ingestor"
    kafka_publish_timeout_seconds: float = Field(default=5.0, gt=0)
    kafka_security_protocol: str = "PLAINTEXT"
    kafka_sasl_mechanism: str | None = None
    kafka_sasl_username: str | None = None
    kafka_sasl_password: str | None = None

    celery_retry_backoff_seconds: float = Field(default=30.0, gt=0)
    celery_retry_max_backoff_seconds: float = Field(default=300.0, gt=0)
    celery_max_retries: int = Field(default=3, ge=0)
    sync_schedule_minutes: int = Field(default=60, ge=1)

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        """Ensure log level values are uppercase for logging config."""

        return value.upper()

    @field_validator("api_keys", mode="before")
    @classmethod
    def _parse_api_keys(cls, value: Any) -> list[str]:
        """Support comma-separated strings or iterables for API key configuration."""

        if value is None:
            return []
        if isinstance(value, str):
            keys = [item.strip() for item in value.split(",")]
            return [key for key in keys if key]
        if isinstance(value, list | tuple | set):
            return [str(item) for item in value if str(item).strip()]
        raise ValueError("api_keys must be a comma-separated string or iterable of strings")

    @field_validator("config_dir", mode="before")
    @classmethod
    def _expand_paths(cls, value: Any) -> Any:
        """Allow string paths and expand user markers."""

        if isinstance(value, Path):
            return value
        if isinstance(value, str):
            return Path(value).expanduser()
        return value

    @field_validator("kafka_security_protocol", "kafka_sasl_mechanism", mode="before")
    @classmethod
    def _normalize_kafka_values(cls, value: Any) -> Any:
        if value is None:
            return value
        return str(value).upper()

    @field_validator("config_profile", mode="before")
    @classmethod
    def _normalize_config_profile(cls, value: Any) -> Any:
        if value is None:
            return value
        if not isinstance(value, str) or not value.strip():
            raise ValueError("config_profile must be a non-empty string if provided")
        return value.strip().lower()

    def provider_settings(self, provider: str) -> ProviderSettings:
        """Return the settings block for ``provider``."""

        value = getattr(self, provider, None)
        if not isinstance(value, ProviderSettings):
            raise ConfigurationError(f"No settings block for provider '{provider}'")
        return value


def _deep_merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two dictionaries without mutating the inputs."""

    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge_dicts(result[key], value)
        else:
            result[key] = value
    return result


@lru_cache(maxsize=8)
def _load_service_configuration_cached(config_dir: str, profile: str) -> ServiceConfiguration:
    """Load and cache the service configuration for a given profile."""

    directory = Path(config_dir)
    base_path = directory / "settings.base.yaml"
    if not base_path.exists():
        raise ConfigurationError(
            f"Missing base configuration template at '{base_path}'. "
            "Create this file to define shared defaults."
        )

    base_config = load_yaml_config(base_path)

    profile_path = directory / f"settings.{profile}.yaml"
    profile_config: dict[str, Any] = {}
    if profile_path.exists():
        profile_config = load_yaml_config(profile_path)
    else:
        logger.debug("No configuration override found for profile '%s'", profile)

    merged = _deep_merge_dicts(base_config, profile_config)
    merged.setdefault("environment", profile)

    try:
        return ServiceConfiguration.model_validate(merged)
    except PydanticValidationError as exc:  # pragma: no cover - validation details bubbled up
        raise ConfigurationError(
            "Invalid configuration template for profile "
            f"'{profile}': {exc}"
        ) from exc


def get_service_configuration(
    settings: GlobalSettings | None = None,
    *,
    reload: bool = False,
) -> ServiceConfiguration:
    """Return the merged service configuration for the active profile."""

    if settings is None:
        settings = get_settings()

    profile = settings.config_profile or settings.environment

    if reload:
        _load_service_configuration_cached.cache_clear()

    return _load_service_configuration_cached(str(settings.config_dir), profile.lower())


def _fetch_secrets_from_manager(
    *,
    secret_name: str,
    region: str | None,
    profile: str | None,
    endpoint_url: str | None,
) -> dict[str, str]:
    """Retrieve secrets (webhook secrets, API keys, DSNs) from AWS Secrets Manager."""

    session_kwargs: dict[str, Any] = {}
    if region:
        session_kwargs["region_name"] = region
    if profile:
        session_kwargs["profile_name"] = profile

    session = Session(**session_kwargs)
    client = session.client("secretsmanager", endpoint_url=endpoint_url)

    try:
        response = client.get_secret_value(SecretId=secret_name)
    except (BotoCoreError, ClientError) as exc:  # pragma: no cover - dependency errors
        raise ConfigurationError(
            f"Unable to retrieve secret '{secret_name}' from AWS Secrets Manager: {exc}"
        ) from exc

    secret_string = response.get("SecretString")
    if secret_string is None:
        secret_binary = response.get("SecretBinary")
        if secret_binary is None:
            return {}
        if isinstance(secret_binary, (bytes, bytearray)):
            secret_string = base64.b64decode(secret_binary).decode("utf-8")
        else:  # pragma: no cover
            secret_string = str(secret_binary)

    try:
        payload = json.loads(secret_string)
    except json.JSONDecodeError as exc:  # pragma: no cover - invalid payload
        raise ConfigurationError(
            "Secrets Manager payload must be valid JSON mapping of environment variables"
        ) from exc

    if not isinstance(payload, dict):  # pragma: no cover - invalid shape
        raise ConfigurationError(
            "Secrets Manager payload must be a JSON object of key/value pairs"
        )

    secrets: dict[str, str] = {}
    for key, value in payload.items():
        if not isinstance(key, str) or value is None:
            continue
        if isinstance(value, (dict, list, tuple)):
            secrets[key] = json.dumps(value)
        else:
            secrets[key] = str(value)

    return secrets


def _inject_secrets_into_environment(secrets: dict[str, str], *, overwrite: bool) -> None:
    """Inject secrets into os.environ respecting overwrite flag."""

    for key, value in secrets.items():
        env_key = key.upper()
        if not env_key.startswith(ENV_PREFIX):
            logger.debug("Ignoring secret '%s' because it does not use %s prefix", env_key, ENV_PREFIX)
            continue
        if not overwrite and env_key in os.environ:
            continue
        os.environ[env_key] = value


def load_runtime_secrets(
    settings: GlobalSettings,
    service_config: ServiceConfiguration,
) -> dict[str, str]:
    """Load secrets defined in configuration or environment and inject them."""

    secrets_cfg = settings.secrets_manager
    config_cfg = service_config.secrets_manager

    if not (secrets_cfg.enabled or config_cfg.enabled):
        return {}

    secret_name = secrets_cfg.secret_name or config_cfg.secret_name
    if not secret_name:
        raise ConfigurationError(
            "Secrets Manager integration enabled but no secret_name configured"
        )

    secrets = _fetch_secrets_from_manager(
        secret_name=secret_name,
        region=secrets_cfg.region or config_cfg.region or settings.aws.region,
        profile=secrets_cfg.profile or config_cfg.profile,
        endpoint_url=secrets_cfg.endpoint_url or config_cfg.endpoint_url,
    )

    _inject_secrets_into_environment(
        secrets, overwrite=secrets_cfg.overwrite_env or config_cfg.overwrite_env
    )
    return secrets


def ensure_runtime_configuration(settings: GlobalSettings | None = None) -> GlobalSettings:
    """Validate configuration templates, load secrets, and ensure required env vars."""

    settings = settings or get_settings()

    service_config = get_service_configuration(settings=settings, reload=True)

    secrets = load_runtime_secrets(settings, service_config)
    if secrets:
        logger.info("Loaded %d secrets from AWS Secrets Manager", len(secrets))
        settings = get_settings(reload=True)

    required_env: set[str] = set(service_config.required_env)
    required_env.update(service_config.messaging.kafka.required_env)
    required_env.update(service_config.secrets_manager.required_env)
    required_env.update({f"{ENV_PREFIX}DATABASE_URL", f"{ENV_PREFIX}API_KEYS"})

    missing = sorted(var for var in required_env if not os.environ.get(var))

    if missing:
        joined = ", ".join(missing)
        raise ConfigurationError(
            "Missing required environment variables: "
            f"{joined}. Configure them via configuration templates, Secrets Manager, or .env files."
        )

    return settings


def tracked_entities_for(provider: str, defaults: list[str]) -> list[str]:
    """Return entity types to backfill for ``provider``, honouring YAML overrides."""

    try:
        configured = get_service_configuration().tracked_entities.get(provider)
    except ConfigurationError:
        return list(defaults)
    return list(configured) if configured else list(defaults)


@lru_cache(maxsize=1)
def _get_settings_cached() -> GlobalSettings:
    return GlobalSettings()


def get_settings(*, reload: bool = False) -> GlobalSettings:
    """Return cached settings, optionally forcing a reload."""

    if reload:
        _get_settings_cached.cache_clear()
    return _get_settings_cached()
