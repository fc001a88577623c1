from pydantic_settings import BaseSettings
from pydantic import field_validator, model_validator
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Upstream services (segment rules, catalog, preview engine, quicklists)
    SEGMENTS_API_URL: str = "http://localhost:8080/api/segments"
    CATALOG_URL: str = "http://localhost:8080/api/segmentation-fields/profile"
    PREVIEW_URL: str = "http://localhost:8080/api/segments/preview/count"
    QUICKLISTS_API_URL: str = "http://localhost:8080/api/quicklists"
    UPSTREAM_API_TOKEN: str | None = None
    UPSTREAM_TIMEOUT_SECONDS: float = 15.0

    @field_validator(
        "SEGMENTS_API_URL", "CATALOG_URL", "PREVIEW_URL", "QUICKLISTS_API_URL", mode="before"
    )
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Endpoint paths are appended with a leading slash."""
        if isinstance(v, str):
            return v.rstrip("/")
        return v

    # Catalog session cache
    CATALOG_SESSION_TTL_SECONDS: int = 1800
    CATALOG_SESSION_MAX_ENTRIES: int = 256

    # Rule compilation / persistence
    SEGMENT_RULE_ORDER_GAP_TOLERANCE: int = 0
    SEGMENT_RULES_PERSIST_GROUP_BOUNDARIES: bool = False
    SEGMENT_RULES_ATOMIC_REPLACE: bool = False
    SEGMENT_RULES_REPLACE_ATTEMPTS: int = 3

    @field_validator(
        "UPSTREAM_TIMEOUT_SECONDS",
        "CATALOG_SESSION_TTL_SECONDS",
        "CATALOG_SESSION_MAX_ENTRIES",
        "SEGMENT_RULES_REPLACE_ATTEMPTS",
    )
    @classmethod
    def must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("SEGMENT_RULE_ORDER_GAP_TOLERANCE")
    @classmethod
    def gap_tolerance_not_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("must not be negative")
        return v

    # CORS
    FRONTEND_URL: str = "http://localhost:5173"

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    DOCS_ENABLED: bool = True

    @model_validator(mode="after")
    def production_guards(self) -> "Settings":
        """Production must not run with debug error details."""
        if self.ENVIRONMENT == "production" and self.DEBUG:
            raise ValueError("DEBUG must be disabled in production")
        return self

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    class Config:
        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
