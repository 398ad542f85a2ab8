"""
Shared configuration management for the scriptable endpoint runtime.
"""

from typing import List, Optional

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="RUNTIME_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Dynamic endpoints
    api_prefix: str = Field(default="/api")
    registry_file: Optional[str] = Field(default=None)
    route_cache_ttl_seconds: int = Field(default=60)
    route_cache_max_entries: int = Field(default=10000)

    # Code execution
    code_timeout_ms: int = Field(default=5000)
    termination_grace_ms: int = Field(default=500)
    temp_dir: Optional[str] = Field(default=None)
    node_path: str = Field(default="node")
    python_path: str = Field(default="python3")
    bash_path: str = Field(default="bash")
    language_javascript_enabled: bool = Field(default=True)
    language_python_enabled: bool = Field(default=True)
    language_bash_enabled: bool = Field(default=True)

    # Rate limiting
    rate_limit_backend: str = Field(default="memory")
    redis_url: str = Field(default="redis://localhost:6379/0")
    rate_limit_sweep_interval: int = Field(default=60)

    # Comma-separated peer addresses whose X-Forwarded-For / X-Real-IP are honoured
    trusted_proxies: str = Field(default="")

    # Admin login
    login_max_attempts: int = Field(default=5)
    login_window_seconds: int = Field(default=900)
    admin_password: Optional[SecretStr] = Field(default=None)
    jwt_secret: SecretStr = Field(default=SecretStr("change-me"))
    jwt_ttl_seconds: int = Field(default=24 * 60 * 60)

    # Request log
    request_log_capacity: int = Field(default=1000)

    def language_enabled(self, language: str) -> bool:
        """Return the toggle for a canonical language name."""
        return bool(getattr(self, f"language_{language}_enabled", False))

    def trusted_proxy_list(self) -> List[str]:
        """Parsed ``trusted_proxies``."""
        return [address.strip() for address in self.trusted_proxies.split(",") if address.strip()]


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
