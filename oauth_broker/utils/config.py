"""Settings for the OAuth Broker Service.

Values come from the environment (or a ``.env`` file). Outside development,
a JSON secret in AWS Secrets Manager named by ``SECRET_NAME`` is laid over
them, so the provider credentials never have to live in the environment.
"""

import json
import logging
import os
from functools import lru_cache
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

_SECRET_ANNOTATIONS = (SecretStr, Optional[SecretStr])


class AwsSecretsManager:
    """Reads JSON secrets from AWS Secrets Manager."""

    def __init__(self, region_name: Optional[str] = None):
        self.region_name = region_name or os.environ.get("AWS_REGION", "us-east-1")
        # AWS_SECRETSMANAGER_ENDPOINT points at localstack in local setups
        self.client = boto3.client(
            service_name="secretsmanager",
            region_name=self.region_name,
            endpoint_url=os.environ.get("AWS_SECRETSMANAGER_ENDPOINT"),
        )

    def get_secret(self, secret_name: str) -> Dict[str, Any]:
        """
        Fetch ``secret_name`` and decode it as a JSON object.

        A missing or unreadable secret is tolerated in development, where an
        empty dict is returned instead.

        Raises:
            ClientError: The secret could not be read outside development
            ValueError: The secret is binary
        """
        try:
            response = self.client.get_secret_value(SecretId=secret_name)
        except ClientError as e:
            if os.environ.get("SERVICE_ENV", "development") != "development":
                raise
            logger.warning("Secret %s unavailable, continuing without it: %s", secret_name, e)
            return {}

        if "SecretString" not in response:
            raise ValueError(f"Secret {secret_name} is binary; only JSON string secrets are supported")
        return json.loads(response["SecretString"])


class Settings(BaseSettings):
    """Broker settings."""

    # Service
    service_env: str = Field("development", description="development, staging or production")
    log_level: str = Field("INFO", description="Root log level")
    log_output: str = Field("stdout", description="Log destination: stdout or file")
    log_file_path: Optional[str] = Field(None, description="Log file path when log_output is 'file'")
    cors_origins: List[str] = Field(["*"], description="Origins allowed by CORS")
    server_base_url: str = Field("http://localhost:3030", description="Public base URL of this service")
    secret_name: Optional[str] = Field(None, description="Secrets Manager secret overlaying these settings")
    aws_region: str = Field("us-east-1", description="Region of the Secrets Manager secret")

    # Upstream provider
    oauth_client_id: Optional[str] = Field(None, description="Provider OAuth client ID")
    oauth_client_secret: Optional[SecretStr] = Field(None, description="Provider OAuth client secret")
    oauth_redirect_uri: Optional[str] = Field(None, description="Provider redirect URI (defaults to the local callback)")
    provider_base_url: Optional[str] = Field(None, description="Provider base URL, e.g. https://acme.zendesk.com")
    provider_subdomain: Optional[str] = Field(None, description="Provider subdomain, used when no base URL is given")
    provider_domain: str = Field("zendesk.com", description="Provider domain for subdomain derivation")
    default_scopes: List[str] = Field(["read", "write"], description="Scopes requested when the client sends none")

    # Broker behavior
    require_pkce: bool = Field(False, description="Reject code redemption for sessions without a client challenge")
    request_timeout_seconds: int = Field(30, description="Timeout of provider token calls in seconds")
    max_retries: int = Field(2, description="Attempts for a transient upstream refresh failure")
    retry_backoff_factor: float = Field(1.0, description="Backoff factor in seconds for refresh retries")
    cleanup_interval_seconds: int = Field(3600, description="Interval between expiry sweeps")

    # Metrics endpoint
    metrics_user: Optional[str] = Field(None, description="Basic auth user for /metrics")
    metrics_pass: Optional[SecretStr] = Field(None, description="Basic auth password for /metrics")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("cors_origins", "default_scopes", mode="before")
    @classmethod
    def split_comma_separated(cls, v: Any) -> Any:
        """Accept a plain comma- or space-separated string for list fields."""
        if isinstance(v, str) and not v.startswith("["):
            return [item for item in v.replace(",", " ").split() if item]
        return v

    @field_validator("cors_origins")
    @classmethod
    def validate_cors_origins(cls, v: List[str]) -> List[str]:
        """Bare host names are taken to be https origins; ``["*"]`` passes through."""
        if v == ["*"]:
            return v
        return [origin if origin.startswith(("http://", "https://")) else f"https://{origin}" for origin in v]

    @property
    def provider_url(self) -> Optional[str]:
        """Resolved provider base URL, or None when neither URL nor subdomain is set."""
        if self.provider_base_url:
            return self.provider_base_url.rstrip("/")
        if self.provider_subdomain:
            return f"https://{self.provider_subdomain}.{self.provider_domain}"
        return None

    @property
    def redirect_uri(self) -> str:
        """Provider redirect URI, defaulting to this service's callback route."""
        return self.oauth_redirect_uri or f"{self.server_base_url.rstrip('/')}/oauth/callback"

    def model_post_init(self, __context: Any) -> None:
        if self.secret_name and self.service_env != "development":
            self._apply_secret(AwsSecretsManager(self.aws_region).get_secret(self.secret_name))

    def _apply_secret(self, values: Dict[str, Any]) -> None:
        """Overlay known settings from a secret; unknown keys are ignored."""
        applied = []
        for key, value in values.items():
            name = key.lower()
            field_info = type(self).model_fields.get(name)
            if field_info is None:
                continue
            if field_info.annotation in _SECRET_ANNOTATIONS and isinstance(value, str):
                value = SecretStr(value)
            setattr(self, name, value)
            applied.append(name)
        logger.info("Loaded %d settings from secret %s", len(applied), self.secret_name)


@lru_cache()
def get_settings() -> Settings:
    """Process-wide settings, built on first use."""
    return Settings()
