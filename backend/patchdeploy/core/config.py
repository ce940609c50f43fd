import os
import logging
import json
from pathlib import Path
from typing import Dict, List, Optional, Union
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv

# Configure logging
logger = logging.getLogger(__name__)

# Load environment variables from .env file if it exists
load_dotenv()

# Check for secrets file
SECRETS_FILE = os.getenv("SECRETS_FILE", "")
if SECRETS_FILE and Path(SECRETS_FILE).exists():
    try:
        with open(SECRETS_FILE, "r") as f:
            secrets_data = json.load(f)
            for key, value in secrets_data.items():
                if key not in os.environ:
                    os.environ[key] = value
        logger.info(f"Loaded secrets from {SECRETS_FILE}")
    except (OSError, ValueError) as e:
        logger.error(f"Error loading secrets file: {e}")


class Settings(BaseSettings):
    """Application settings.

    Loaded from environment variables or a .env file. Every heuristic used by
    the deployment engine (health thresholds, retry counts, windows) lives here
    so operators can tune it without a code change.
    """
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", case_sensitive=True)

    # API Configuration
    API_V1_STR: str = "/v1"
    PROJECT_NAME: str = "PatchDeploy"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ORIGINS: List[str] = ["*"]

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v: Union[str, List[str]]) -> Union[List[str], str]:
        if isinstance(v, str) and not v.startswith("["):
            return [i.strip() for i in v.split(",")]
        elif isinstance(v, (list, str)):
            return v
        raise ValueError(v)

    # Admission and fan-out
    MAX_CONCURRENT_DEPLOYMENTS: int = 5
    MAX_ASSET_FANOUT: int = 4

    # Health monitoring
    MONITORING_WINDOW_SECONDS: float = 24 * 60 * 60
    HEALTH_CHECK_INTERVAL_SECONDS: float = 60
    CONSECUTIVE_CRITICAL_THRESHOLD: int = 3
    HEALTHY_SCORE_THRESHOLD: float = 80
    WARNING_SCORE_THRESHOLD: float = 60
    HEALTH_WEIGHT_CONNECTIVITY: float = 1.0
    HEALTH_WEIGHT_PERFORMANCE: float = 1.0
    HEALTH_WEIGHT_FUNCTIONALITY: float = 1.0
    HEALTH_REQUEST_TIMEOUT_SECONDS: float = 10.0
    FAST_RESPONSE_MS: float = 1000
    SLOW_RESPONSE_MS: float = 5000
    MIN_CONTENT_LENGTH: int = 1000
    HEALTH_SAMPLE_HISTORY: int = 100

    # Transport adapters
    TRANSPORT_MAX_ATTEMPTS: int = 3
    TRANSPORT_BACKOFF_MIN_SECONDS: float = 1.0
    TRANSPORT_BACKOFF_MAX_SECONDS: float = 10.0
    TRANSPORT_TIMEOUT_SECONDS: float = 30.0
    SSH_BINARY: str = "ssh"

    # Status streaming
    SSE_HEARTBEAT_SECONDS: float = 30

    # Records and retention
    MAX_LOG_ENTRIES: int = 100
    HISTORY_RETENTION_HOURS: float = 24
    BACKUP_RETENTION_DAYS: float = 30

    # Storage
    STORE_BACKEND: str = "memory"
    SUPABASE_URL: Optional[str] = None
    SUPABASE_KEY: Optional[str] = None

    @field_validator("STORE_BACKEND")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        v = v.lower()
        if v not in ("memory", "supabase"):
            raise ValueError(f"Unsupported store backend: {v}")
        return v

    # Credential vault
    ENCRYPTION_KEY: Optional[str] = None
    CREDENTIALS_DIR: str = "data/credentials"

    # Monitoring Configuration
    ENABLE_METRICS: bool = True

    @property
    def health_weights(self) -> Dict[str, float]:
        return {
            "connectivity": self.HEALTH_WEIGHT_CONNECTIVITY,
            "performance": self.HEALTH_WEIGHT_PERFORMANCE,
            "functionality": self.HEALTH_WEIGHT_FUNCTIONALITY,
        }


settings = Settings()
