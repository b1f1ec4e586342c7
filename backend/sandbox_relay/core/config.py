from pydantic_settings import BaseSettings
from typing import List, Any
import json
from pathlib import Path


def parse_cors_origins(v: Any) -> List[str]:
    """Parse CORS origins from string or list"""
    if isinstance(v, list):
        return v
    if isinstance(v, str):
        # Try JSON parsing first
        if v.startswith('['):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        # Fall back to comma-separated
        return [origin.strip() for origin in v.split(',') if origin.strip()]
    return []


class Settings(BaseSettings):
    """Application settings - all configurable via environment variables"""

    # ==========================================
    # Application
    # ==========================================
    APP_NAME: str = "Sandbox Relay"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    API_PREFIX: str = "/api"

    # Server Configuration
    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 8000

    # ==========================================
    # CORS (stored as comma-separated string, parsed to list)
    # ==========================================
    CORS_ORIGINS_STR: str = "http://localhost:5173,http://127.0.0.1:5173,http://localhost:8787"

    @property
    def CORS_ORIGINS(self) -> List[str]:
        """Parse CORS origins from comma-separated string"""
        return parse_cors_origins(self.CORS_ORIGINS_STR)

    # ==========================================
    # Logging
    # ==========================================
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""  # Empty disables the rotating file handler

    # ==========================================
    # State Store
    # ==========================================
    REDIS_URL: str = ""  # Empty means in-process store (single worker only)
    REDIS_STATE_PREFIX: str = "sandbox_state:"
    DEFAULT_TENANT_KEY: str = "default"

    # ==========================================
    # Remote Execution Provider (Daytona)
    # ==========================================
    DAYTONA_API_KEY: str = ""
    DAYTONA_API_URL: str = ""  # Empty means SDK default
    DAYTONA_TARGET: str = ""
    ANTHROPIC_API_KEY: str = ""  # Forwarded into the sandbox environment

    SANDBOX_SNAPSHOT: str = "claude-code-env:1.0.0"
    SANDBOX_PUBLIC: bool = True  # Preview links reachable without a token
    SANDBOX_START_TIMEOUT: int = 60  # seconds
    SANDBOX_ARCHIVED_START_TIMEOUT: int = 300  # Archived sandboxes restore from cold storage

    # ==========================================
    # Dev Server (auxiliary process inside the sandbox)
    # ==========================================
    DEV_SERVER_PORT: int = 3000
    DEV_SERVER_PROCESS_NAME: str = "vite-dev-server"
    TEMPLATE_DIR: str = "/workspace/template"
    PROJECT_DIR: str = "/tmp/project"
    DEV_SERVER_ECOSYSTEM_FILE: str = "/workspace/template/ecosystem.config.cjs"

    # ==========================================
    # Health Probe
    # ==========================================
    HEALTH_PROBE_TIMEOUT: float = 5.0  # seconds

    # ==========================================
    # Agent Bridge
    # ==========================================
    AGENT_COMMAND: str = "claude"
    AGENT_STREAM_TIMEOUT: float = 60.0  # seconds, whole log subscription
    AGENT_STREAM_QUEUE_SIZE: int = 256

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields in .env that aren't defined in Settings

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if self.LOG_FILE:
            Path(self.LOG_FILE).parent.mkdir(exist_ok=True, parents=True)

    def is_dev_mode(self) -> bool:
        """Check if running in development mode"""
        return self.ENVIRONMENT == "development" or self.DEBUG

    def uses_redis(self) -> bool:
        return bool(self.REDIS_URL)


# Create settings instance
settings = Settings()
