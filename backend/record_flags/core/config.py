"""
Configuration management using Pydantic Settings
"""
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# config.py is at: backend/record_flags/core/config.py
_current_file = Path(__file__).resolve()
_backend_dir = _current_file.parent.parent.parent
_project_root = _backend_dir.parent
ENV_FILE = _project_root / ".env"
# Fallback: try in backend/ directory if not found in project root
if not ENV_FILE.exists():
    ENV_FILE = _backend_dir / ".env"
if ENV_FILE.exists():
    load_dotenv(ENV_FILE, override=False)


class Settings(BaseSettings):
    """Application settings"""

    # Application
    app_name: str = "record-flags"
    app_env: str = Field(default="development", description="Application environment")
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, ge=1, le=65535, description="API port")
    allowed_origins: str = Field(
        default="http://localhost:8000",
        description="Allowed CORS origins (comma-separated)"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_sqlalchemy: bool = Field(default=False, description="Enable SQLAlchemy query logging")
    log_module_levels: Optional[str] = Field(
        default=None,
        description='Module-specific log levels (JSON string, e.g., {"record_flags.services": "DEBUG"})'
    )
    log_format: str = Field(
        default="json",
        description="Log format: 'json' for structured logging, 'text' for plain text"
    )
    log_file_enabled: bool = Field(default=False, description="Enable file logging")
    log_file_path: str = Field(
        default="logs/record_flags.log",
        description="Path to log file (relative to project root)"
    )
    log_file_retention: int = Field(
        default=30,
        ge=1,
        description="Number of days to keep log files"
    )
    log_sensitive_data: bool = Field(
        default=False,
        description="Enable logging of sensitive data (passwords, tokens) - NOT RECOMMENDED"
    )

    # Database (flag catalog store)
    database_url: str = Field(
        default="sqlite:///./record_flags.db",
        description="SQLAlchemy URL of the flag catalog store"
    )
    database_echo: bool = Field(default=False, description="Echo SQL statements")

    # Tracing
    enable_tracing: bool = Field(default=True, description="Enable OpenTelemetry tracing")
    tracing_service_name: str = Field(default="record-flags", description="Service name for tracing")
    tracing_exporter: str = Field(
        default="console",
        description="Tracing exporter: 'console', 'otlp' or 'none'"
    )
    tracing_otlp_endpoint: Optional[str] = Field(
        default=None,
        description="OTLP endpoint URL (e.g., http://localhost:4318/v1/traces)"
    )

    # Flag orchestration
    flag_unit_timeout_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Per-unit invocation timeout in seconds (unset = wait indefinitely)"
    )
    flag_run_sync_units_in_thread: bool = Field(
        default=True,
        description="Run synchronous unit callables in a worker thread"
    )
    flag_cancel_superseded_runs: bool = Field(
        default=True,
        description="Cancel in-flight invocations of a run replaced by a refresh"
    )
    flag_unit_modules: str = Field(
        default="",
        description="Modules imported at startup to register flag units (comma-separated)"
    )
    flag_error_header: str = Field(
        default="Component Error",
        min_length=1,
        description="Header of the coalesced error flag"
    )
    flag_notice_prefix: str = Field(
        default="Something went wrong in record flags! ",
        description="Prefix of top-level failure notices"
    )

    @property
    def unit_modules_list(self) -> List[str]:
        """Parse flag unit modules from comma-separated string"""
        return [name.strip() for name in self.flag_unit_modules.split(",") if name.strip()]

    @property
    def allowed_origins_list(self) -> List[str]:
        """Parse CORS origins from comma-separated string"""
        return [origin.strip() for origin in self.allowed_origins.split(",") if origin.strip()]

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE) if ENV_FILE.exists() else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_ignore_empty=True
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
