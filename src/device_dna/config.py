"""
Configuration management for device-dna.

Settings come from DEVICEDNA_* environment variables (or a .env file) and
from CLI overrides passed to load_config(). All values are validated up
front so a collection run never starts half-configured.
"""

from pathlib import Path
from typing import Any, FrozenSet, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ._types import CollectionCategory
from .exceptions import ConfigurationError


GRAPH_BETA_URL = "https://graph.microsoft.com/beta"
AUTHORITY_URL = "https://login.microsoftonline.com"

VALID_SKIP_CATEGORIES = frozenset(c.value for c in CollectionCategory)


class CollectorConfig(BaseSettings):
    """Collector configuration loaded from environment and CLI."""

    # ========================================================================
    # Target
    # ========================================================================

    device_name: Optional[str] = Field(
        default=None,
        description="Device display name (defaults to the target's hostname)"
    )
    target_host: str = Field(
        default="localhost",
        description="Machine to probe; localhost runs probes in-process"
    )
    winrm_port: int = Field(
        default=5985,
        ge=1,
        le=65535,
        description="WinRM port (5986 for HTTPS)"
    )
    winrm_username: str = Field(default="", description="WinRM username")
    winrm_password: str = Field(default="", description="WinRM password")
    winrm_use_ssl: bool = Field(default=False, description="Use WinRM over HTTPS")
    winrm_transport: str = Field(
        default="ntlm",
        description="WinRM transport: ntlm, kerberos, certificate"
    )

    # ========================================================================
    # Microsoft Graph
    # ========================================================================

    tenant_id: Optional[str] = Field(default=None, description="Entra tenant id or domain")
    client_id: Optional[str] = Field(default=None, description="App registration client id")
    client_secret: Optional[str] = Field(default=None, description="App client secret")
    certificate_path: Optional[Path] = Field(
        default=None,
        description="PEM file with private key and certificate for app auth"
    )
    access_token: Optional[str] = Field(
        default=None,
        description="Pre-acquired bearer token (skips token acquisition)"
    )
    graph_base_url: str = Field(default=GRAPH_BETA_URL, description="Graph API root")
    authority_url: str = Field(default=AUTHORITY_URL, description="Identity platform root")

    # ========================================================================
    # Run
    # ========================================================================

    output_dir: Path = Field(default=Path("output"), description="Report output directory")
    skip_categories: str = Field(
        default="",
        description="Comma-separated collection categories to skip"
    )
    export_job_max_wait: int = Field(
        default=60,
        ge=10,
        le=600,
        description="Seconds to wait for an export job"
    )
    large_export_job_max_wait: int = Field(
        default=90,
        ge=10,
        le=600,
        description="Seconds to wait for large export jobs (app inventory)"
    )
    probe_timeout: Optional[int] = Field(
        default=None,
        ge=5,
        le=1800,
        description="Timeout in seconds applied to every probe (default: per probe)"
    )
    http_timeout: int = Field(default=30, ge=1, le=300, description="HTTP timeout in seconds")
    max_retries: int = Field(default=3, ge=1, le=10, description="Attempts per Graph request")

    # ========================================================================
    # Logging
    # ========================================================================

    log_level: str = Field(default="INFO", description="Log level")

    model_config = SettingsConfigDict(
        env_prefix="DEVICEDNA_",
        env_file=".env",
        extra="ignore",
        validate_assignment=True,
    )

    # ========================================================================
    # Validators
    # ========================================================================

    @field_validator("winrm_transport")
    @classmethod
    def validate_transport(cls, v):
        if v not in ("ntlm", "kerberos", "certificate", "basic", "credssp"):
            raise ValueError("winrm_transport must be ntlm, kerberos, certificate, basic or credssp")
        return v

    @field_validator("skip_categories")
    @classmethod
    def validate_skip_categories(cls, v):
        names = [part.strip().lower() for part in (v or "").split(",") if part.strip()]
        unknown = sorted(set(names) - VALID_SKIP_CATEGORIES)
        if unknown:
            raise ValueError(
                f"Unknown skip categories: {', '.join(unknown)} "
                f"(valid: {', '.join(sorted(VALID_SKIP_CATEGORIES))})"
            )
        return ",".join(names)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        v = v.upper()
        if v not in ("DEBUG", "INFO", "WARNING", "ERROR"):
            raise ValueError("log_level must be DEBUG, INFO, WARNING, or ERROR")
        return v

    @field_validator("graph_base_url", "authority_url")
    @classmethod
    def strip_trailing_slash(cls, v):
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_credentials(self):
        if self.client_secret and self.certificate_path:
            raise ValueError("Configure either client_secret or certificate_path, not both")
        if (self.client_secret or self.certificate_path) and not self.client_id:
            raise ValueError("client_id required for app authentication")
        return self

    # ========================================================================
    # Parsed Properties
    # ========================================================================

    @property
    def skip(self) -> FrozenSet[str]:
        """Skipped categories as a set."""
        return frozenset(p for p in self.skip_categories.split(",") if p)

    @property
    def has_graph_credentials(self) -> bool:
        return bool(self.access_token or (self.client_id and (self.client_secret or self.certificate_path)))

    @property
    def remote_enabled(self) -> bool:
        """Remote (Graph) collection runs when a tenant and a credential exist."""
        return (
            bool(self.tenant_id)
            and self.has_graph_credentials
            and CollectionCategory.INTUNE.value not in self.skip
        )

    @property
    def is_local_target(self) -> bool:
        return self.target_host.lower() in ("", ".", "localhost", "127.0.0.1")


def load_config(**overrides: Any) -> CollectorConfig:
    """
    Load configuration from the environment, applying explicit overrides.

    Args:
        **overrides: Field values from the CLI; None values are ignored

    Returns:
        CollectorConfig: Validated configuration

    Raises:
        ConfigurationError: If settings are missing or invalid
    """
    values = {k: v for k, v in overrides.items() if v is not None}
    try:
        return CollectorConfig(**values)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e
