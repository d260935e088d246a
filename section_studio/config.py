from pathlib import Path
from typing import Annotated, Any

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# Load env values for components that read os.environ directly (e.g., boto3).
_project_root = Path(__file__).resolve().parents[1]
load_dotenv(_project_root / ".env", override=False)


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"

    DATABASE_URL: str = "sqlite:///./section_studio.db"
    DB_POOL_SIZE: int = 20
    DB_POOL_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30

    CLERK_JWT_ISSUER: str = ""
    CLERK_JWKS_URL: str = ""
    CLERK_AUDIENCE: Annotated[list[str], NoDecode] = ["http://localhost:5173", "backend"]

    BACKEND_CORS_ORIGINS: Annotated[list[str], NoDecode] = ["http://localhost:5173"]

    GEMINI_API_KEY: str | None = None
    GEMINI_API_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    GENERATIVE_IMAGE_MODEL: str = "gemini-3-pro-image-preview"
    # Hard ceiling for one generative call; on expiry the item moves to its fallback.
    GENERATIVE_TIMEOUT_SECONDS: float = 90.0

    REPLICATE_API_TOKEN: str | None = None
    REPLICATE_API_BASE_URL: str = "https://api.replicate.com/v1"
    REPLICATE_UPSCALE_MODEL: str = "nightmareai/real-esrgan"
    REPLICATE_UPSCALE_MODEL_VERSION: str = "f121d640bd286e1fdc67f9799164c1d5be36ff74576ee11c803ae5b665dd46aa"
    REPLICATE_TIMEOUT_SECONDS: float = 120.0
    REPLICATE_POLL_INTERVAL_SECONDS: float = 2.0

    UPSCALE_TARGET_WIDTH: int = 1500
    MAX_TARGET_WIDTH: int = 4096
    BOUNDARY_CONTEXT_MAX_PX: int = 100
    RESTORE_MAX_EXTENSION_PX: int = 500
    RESTORE_MIN_EXTENSION_PX: int = 10

    IMAGE_FETCH_TIMEOUT_SECONDS: float = 30.0
    IMAGE_FETCH_MAX_BYTES: int = 40 * 1024 * 1024

    MEDIA_STORAGE_BUCKET: str | None = None
    MEDIA_STORAGE_ENDPOINT: str | None = None
    MEDIA_STORAGE_REGION: str = "us-east-1"
    MEDIA_STORAGE_ACCESS_KEY: str | None = None
    MEDIA_STORAGE_SECRET_KEY: str | None = None
    MEDIA_STORAGE_PREFIX: str = "dev"
    MEDIA_STORAGE_PRESIGN_TTL_SECONDS: int = 60 * 60 * 24 * 7
    MEDIA_STORAGE_USE_SSL: bool = True
    MEDIA_STORAGE_FORCE_PATH_STYLE: bool = True
    PUBLIC_ASSET_BASE_URL: str | None = None

    # USD per generated image, keyed by model id.
    IMAGE_MODEL_PRICING: dict[str, float] = Field(
        default_factory=lambda: {
            "gemini-3-pro-image-preview": 0.134,
            "nightmareai/real-esrgan": 0.0025,
        }
    )
    MONTHLY_GENERATION_LIMIT: int | None = None

    @field_validator("BACKEND_CORS_ORIGINS", mode="before")
    @classmethod
    def split_origins(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [origin.strip() for origin in value.split(",") if origin.strip()]
        return value

    @field_validator("CLERK_AUDIENCE", mode="before")
    @classmethod
    def split_audience(cls, value: str | list[str]) -> list[str]:
        if isinstance(value, str):
            return [aud.strip() for aud in value.split(",") if aud.strip()]
        return value

    @property
    def uses_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    def image_price(self, model: str | None) -> float:
        if not model:
            return 0.0
        return float(self.IMAGE_MODEL_PRICING.get(model, 0.0))

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()


def settings_snapshot() -> dict[str, Any]:
    """Non-secret settings that shape a job; logged at job start."""
    return {
        "model": settings.GENERATIVE_IMAGE_MODEL,
        "timeoutSeconds": settings.GENERATIVE_TIMEOUT_SECONDS,
        "upscaleTargetWidth": settings.UPSCALE_TARGET_WIDTH,
        "alternateUpscaler": bool(settings.REPLICATE_API_TOKEN),
    }
