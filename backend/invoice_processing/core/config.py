"""
Configuration settings for the application
"""

import os
import sys
from typing import List, Optional, Tuple
from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings

# Invoice columns that may take part in the duplicate-detection key
DUPLICATE_KEY_CANDIDATES = {
    "invoice_number",
    "total_amount",
    "invoice_date",
    "customer_name",
    "currency",
}


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = os.getenv("APP_NAME", "Invoice Processing")
    APP_DEBUG: bool = os.getenv("APP_DEBUG", "False").lower() == "true"
    APP_ENV: str = os.getenv("APP_ENV", "development")
    APP_HOST: str = os.getenv("APP_HOST", "0.0.0.0")
    APP_PORT: int = int(os.getenv("APP_PORT", "8000"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FORMAT: str = os.getenv("LOG_FORMAT", "json")
    # Log the prompt text sent to the extraction model (document text is never logged)
    LOG_EXTRACTION_PROMPTS: bool = (
        os.getenv("LOG_EXTRACTION_PROMPTS", "False").lower() == "true"
    )

    # Database
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./invoice_processing.db")

    # Base URL for deriving CORS origins
    BASE_URL: str = os.getenv("BASE_URL", "localhost")

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def derive_cors_origins(cls, v, info):
        """Derive CORS origins from BASE_URL if not explicitly set"""
        if v is None:
            base_url = info.data.get("BASE_URL", "localhost")
            origins = [f"http://{base_url}", f"https://{base_url}"]
            if base_url == "localhost" or base_url.startswith("localhost:"):
                origins.append("http://localhost:3000")  # React dev server
            return origins
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    CORS_ORIGINS: Optional[List[str]] = Field(default=None, validate_default=True)

    # Anthropic (AI structured extraction)
    ANTHROPIC_API_KEY: Optional[str] = os.getenv("ANTHROPIC_API_KEY")
    ANTHROPIC_BASE_URL: str = os.getenv("ANTHROPIC_BASE_URL", "https://api.anthropic.com")
    ANTHROPIC_MODEL: str = os.getenv("ANTHROPIC_MODEL", "claude-sonnet-4-20250514")
    ANTHROPIC_MAX_TOKENS: int = int(os.getenv("ANTHROPIC_MAX_TOKENS", "4096"))
    ANTHROPIC_VERSION: str = os.getenv("ANTHROPIC_VERSION", "2023-06-01")

    # Upper bounds for the two external calls of an extraction attempt
    AI_EXTRACTION_TIMEOUT_SECONDS: float = float(
        os.getenv("AI_EXTRACTION_TIMEOUT_SECONDS", "120")
    )
    TEXT_EXTRACTION_TIMEOUT_SECONDS: float = float(
        os.getenv("TEXT_EXTRACTION_TIMEOUT_SECONDS", "30")
    )

    # Uploads
    MAX_UPLOAD_SIZE_MB: int = int(os.getenv("MAX_UPLOAD_SIZE_MB", "10"))

    # Prompt testing
    # Cached test documents live in Redis so every worker sees them
    REDIS_URL: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    TEST_FILE_TTL_SECONDS: int = int(os.getenv("TEST_FILE_TTL_SECONDS", "300"))  # 5 minutes

    # Ingestion policy
    LOW_CONFIDENCE_THRESHOLD: float = float(os.getenv("LOW_CONFIDENCE_THRESHOLD", "0.7"))
    DUPLICATE_KEY_FIELDS: str = os.getenv(
        "DUPLICATE_KEY_FIELDS", "invoice_number,total_amount"
    )

    @property
    def duplicate_key_fields(self) -> Tuple[str, ...]:
        return tuple(
            f.strip() for f in self.DUPLICATE_KEY_FIELDS.split(",") if f.strip()
        )

    @model_validator(mode="after")
    def validate_ingestion_policy(self):
        """Reject ingestion settings that would silently disable the guards."""
        if not 0.0 <= self.LOW_CONFIDENCE_THRESHOLD <= 1.0:
            raise ValueError("LOW_CONFIDENCE_THRESHOLD must be between 0 and 1")

        fields = self.duplicate_key_fields
        if not fields:
            raise ValueError("DUPLICATE_KEY_FIELDS must name at least one column")
        unknown = [f for f in fields if f not in DUPLICATE_KEY_CANDIDATES]
        if unknown:
            raise ValueError(
                f"DUPLICATE_KEY_FIELDS contains unsupported columns: {', '.join(unknown)}"
            )

        if self.APP_ENV == "production" and not self.ANTHROPIC_API_KEY:
            print(
                "WARNING: ANTHROPIC_API_KEY is not set - extraction requests will fail",
                file=sys.stderr,
            )
        return self

    model_config = {
        "env_file": ".env",
        "case_sensitive": True,
        "extra": "ignore",
    }


# Global settings instance
settings = Settings()
