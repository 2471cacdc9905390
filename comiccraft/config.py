# config.py
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# ------------------ ENV & CONFIG ------------------
load_dotenv()

DEFAULT_ROOT = Path(os.getenv("COMICCRAFT_ROOT", Path.cwd()))
FALLBACK_IMAGE_NAME = "example_uae.jpeg"
GENERATED_IMAGES = "generated-images"


def key_is_disabled(key: Optional[str]) -> bool:
    """A missing, blank or commented-out (#...) key disables the provider."""
    return not key or not key.strip() or key.strip().startswith("#")


class Settings(BaseModel):
    # image provider
    fal_key: Optional[str] = None
    fal_image_model: str = "fal-ai/nano-banana"
    download_timeout: float = 30.0

    # mail transport
    sendgrid_api_key: Optional[str] = None
    email_user: Optional[str] = None
    admin_email: Optional[str] = None
    public_base_url: str = "https://literacyunlocked.ae"

    # filesystem
    root_dir: Path = Field(default_factory=lambda: DEFAULT_ROOT)
    prompt_log: Optional[Path] = None

    # editor sessions
    editor_max_sessions: int = 50
    editor_idle_timeout: float = 1800.0

    # server
    environment: str = "development"
    version: str = "unknown"
    host: str = "127.0.0.1"
    port: int = 5001
    log_level: str = "INFO"

    @property
    def image_generation_enabled(self) -> bool:
        return not key_is_disabled(self.fal_key)

    @property
    def public_dir(self) -> Path:
        return self.root_dir / "public"

    @property
    def dist_dir(self) -> Path:
        return self.root_dir / "dist" / "public"

    @property
    def generated_images_dir(self) -> Path:
        return self.public_dir / GENERATED_IMAGES

    @property
    def dist_generated_images_dir(self) -> Path:
        return self.dist_dir / GENERATED_IMAGES

    @property
    def fallback_image_path(self) -> Path:
        return self.root_dir / FALLBACK_IMAGE_NAME

    @classmethod
    def from_env(cls) -> "Settings":
        env = os.environ
        values = {
            "fal_key": env.get("FAL_KEY"),
            "email_user": env.get("EMAIL_USER"),
            "sendgrid_api_key": env.get("SENDGRID_API_KEY"),
            "admin_email": env.get("ADMIN_EMAIL") or None,
            "environment": env.get("APP_ENV") or env.get("NODE_ENV") or "development",
        }
        # Only override defaults for variables that are actually set
        optional = {
            "fal_image_model": "FAL_IMAGE_MODEL",
            "download_timeout": "DOWNLOAD_TIMEOUT",
            "prompt_log": "PROMPT_LOG",
            "editor_max_sessions": "EDITOR_MAX_SESSIONS",
            "editor_idle_timeout": "EDITOR_IDLE_TIMEOUT",
            "public_base_url": "PUBLIC_BASE_URL",
            "root_dir": "COMICCRAFT_ROOT",
            "version": "APP_VERSION",
            "host": "HOST",
            "port": "PORT",
            "log_level": "LOG_LEVEL",
        }
        for field_name, var in optional.items():
            if env.get(var):
                values[field_name] = env[var]
        return cls(**values)
