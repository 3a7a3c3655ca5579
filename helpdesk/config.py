"""Configuration loader for the help-desk service with validation."""
import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


@dataclass
class Config:
    """
    Help-desk configuration from environment variables.

    All settings are validated on load to fail fast if misconfigured.
    Channel bot tokens live on the `channels` table, not here.
    """

    # Media referenced by automation steps as storage-relative paths
    storage_root: str = "storage/app/public"
    public_storage_prefix: str = "/storage"

    # Automations
    tag_trigger_dedup_seconds: int = 30

    # Webhook (for production)
    webhook_path: str = "/webhook"
    webhook_url: str = ""
    webhook_secret: str = ""

    # Admin API (run logs)
    admin_api_token: str = ""

    log_level: str = "INFO"

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.tag_trigger_dedup_seconds < 0:
            raise ValueError("TAG_TRIGGER_DEDUP_SECONDS must be >= 0")

        if not self.public_storage_prefix.startswith("/"):
            raise ValueError("PUBLIC_STORAGE_PREFIX must start with '/'")

        if not self.webhook_path.startswith("/"):
            raise ValueError("WEBHOOK_PATH must start with '/'")

        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError("LOG_LEVEL must be one of DEBUG|INFO|WARNING|ERROR|CRITICAL")

    @classmethod
    def from_env(cls) -> "Config":
        """
        Load configuration from environment variables.

        Raises:
            RuntimeError: If required environment variables are missing
            ValueError: If configuration values are invalid
        """
        if not os.getenv("DATABASE_URL"):
            raise RuntimeError("DATABASE_URL environment variable is required")

        return cls(
            storage_root=os.getenv("STORAGE_ROOT", "storage/app/public"),
            public_storage_prefix=os.getenv("PUBLIC_STORAGE_PREFIX", "/storage"),
            tag_trigger_dedup_seconds=int(os.getenv("TAG_TRIGGER_DEDUP_SECONDS", "30")),
            webhook_path=os.getenv("WEBHOOK_PATH", "/webhook"),
            webhook_url=os.getenv("WEBHOOK_URL", ""),
            webhook_secret=os.getenv("WEBHOOK_SECRET", ""),
            admin_api_token=os.getenv("ADMIN_API_TOKEN", ""),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return bool(self.webhook_url)
