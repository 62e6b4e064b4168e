"""
Application configuration loaded from environment variables.
"""
import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_WORKFLOW_DIR = Path(__file__).parent / "workflows"
DEFAULT_MAX_REQUEST_BYTES = 10 * 1024 * 1024
DEFAULT_MOCK_JOB_DELAY_MS = 2500
DEFAULT_MOCK_DATA_TTL_MS = 60 * 60 * 1000

AI_PROVIDER = "runpod"
AI_EXECUTION_MODE = "async-webhook"


class ConfigError(Exception):
    pass


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # RunPod API
    runpod_endpoint_id: str = ""
    runpod_api_key: str = ""
    runpod_api_base_url: str = "https://api.runpod.ai/v2"
    runpod_webhook_secret: str = ""
    runpod_webhook_token_param: str = "token"
    runpod_image_transport: Optional[str] = None  # url | images | unset (auto)
    runpod_input_image_name: Optional[str] = None
    runpod_checkpoint_name: Optional[str] = None
    runpod_run_max_request_bytes: Optional[str] = None
    runpod_comfy_org_api_key: Optional[str] = None
    comfy_org_api_key: Optional[str] = None

    # Workflow templates
    workflow_dir: Optional[str] = None

    # Public base URL (webhook callbacks)
    public_base_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("PUBLIC_BASE_URL", "NEXT_PUBLIC_BASE_URL"),
    )

    # Timeouts
    api_timeout_seconds: float = 60
    storage_head_timeout_seconds: float = 2.5

    # Local mock mode (no provider, no database)
    poc_mock_mode: Optional[str] = None
    poc_mock_job_delay_ms: Optional[str] = None
    poc_mock_data_ttl_ms: Optional[str] = None

    # Shopify write-back and order webhooks
    shopify_enabled: Optional[str] = None
    shopify_store_domain: Optional[str] = None
    shopify_admin_access_token: Optional[str] = None
    shopify_api_version: str = "2025-10"
    shopify_webhook_secret: Optional[str] = None

    # Object storage (Supabase)
    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None
    supabase_storage_bucket: Optional[str] = None
    supabase_storage_public_domain: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("SUPABASE_STORAGE_PUBLIC_DOMAIN", "S3_PUBLIC_DOMAIN"),
    )

    # Database
    database_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("SUPABASE_DB_URL", "DATABASE_URL"),
    )

    # Dev-only: skip TLS verification on outbound calls (intercepting proxies)
    allow_self_signed_tls: Optional[str] = None

    @property
    def mock_mode(self) -> bool:
        return parse_bool(self.poc_mock_mode, default=False)

    @property
    def shopify_integration_enabled(self) -> bool:
        return parse_bool(self.shopify_enabled, default=True)

    @property
    def verify_tls(self) -> bool:
        return not parse_bool(self.allow_self_signed_tls, default=False)

    @property
    def mock_job_delay_seconds(self) -> float:
        return parse_positive_int(self.poc_mock_job_delay_ms, DEFAULT_MOCK_JOB_DELAY_MS) / 1000.0

    @property
    def mock_data_ttl_seconds(self) -> float:
        return parse_positive_int(self.poc_mock_data_ttl_ms, DEFAULT_MOCK_DATA_TTL_MS) / 1000.0

    @property
    def max_request_bytes(self) -> int:
        return parse_positive_int(self.runpod_run_max_request_bytes, DEFAULT_MAX_REQUEST_BYTES)

    def require(self, attr: str) -> str:
        """Return a non-empty setting or raise ConfigError naming its env var."""
        value = getattr(self, attr, None)
        if not value or not str(value).strip():
            raise ConfigError(f"Missing required environment variable: {attr.upper()}")
        return str(value).strip()


def parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None or not str(value).strip():
        return default
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


def parse_positive_int(value: Optional[str], fallback: int) -> int:
    if value is None:
        return fallback
    try:
        parsed = int(str(value).strip())
    except ValueError:
        return fallback
    return parsed if parsed > 0 else fallback


@lru_cache
def get_settings() -> Settings:
    return Settings()


def get_workflow_dir() -> Path:
    s = get_settings()
    if s.workflow_dir:
        return Path(s.workflow_dir)
    return DEFAULT_WORKFLOW_DIR


def get_style_checkpoint_override(style_key: str) -> Optional[str]:
    """Per-style checkpoint override, e.g. RUNPOD_CHECKPOINT_SKETCH."""
    if not style_key:
        return None
    value = os.environ.get(f"RUNPOD_CHECKPOINT_{style_key.upper()}", "").strip()
    return value or None
