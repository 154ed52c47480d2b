"""Application settings and per-kind verification configuration."""
from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, Tuple

from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from app.models.enums import EntityKind


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", env_prefix="VERIFY_")

    app_name: str = "entity-verification"
    log_level: str = "INFO"

    # Use PostgreSQL in production (from DATABASE_URL env var), SQLite locally
    database_url: str = Field(
        "sqlite:///./verification.db",
        validation_alias=AliasChoices("VERIFY_DATABASE_URL", "DATABASE_URL"),
    )

    # Verification tokens fail validation after this window; no sweep is needed.
    email_token_ttl_minutes: int = 60
    # Bound retries of the document store and notification channel.
    external_retry_attempts: int = 3
    external_retry_wait_seconds: float = 0.2

    document_storage_dir: str = "./documents"
    # Matches the 10MB limit on the upload form.
    max_document_bytes: int = 10 * 1024 * 1024

    # Website ownership checks
    website_check_timeout_seconds: float = 10.0
    dns_over_https_url: str = "https://dns.google/resolve"

    # Comma-delimited document types; required sets gate submission.
    institution_required_documents: str = (
        "registration_certificate,accreditation_certificate,tax_document,proof_of_address"
    )
    institution_optional_documents: str = "other"
    institution_categories: str = "university,college,school,research_institute,training_center"
    organization_required_documents: str = (
        "registration_certificate,tax_document,proof_of_address,director_id"
    )
    organization_optional_documents: str = "other"
    organization_categories: str = "ngo,company,association,foundation,government_agency"

    @field_validator("database_url")
    @classmethod
    def _normalize_postgres_scheme(cls, value: str) -> str:
        # Render/Heroku use postgres:// but SQLAlchemy needs postgresql://
        if value.startswith("postgres://"):
            return value.replace("postgres://", "postgresql://", 1)
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()


@dataclass(frozen=True)
class KindConfig:
    """Kind-specific configuration injected into the verification engine."""
    label: str
    required_documents: Tuple[str, ...]
    optional_documents: Tuple[str, ...] = ()
    categories: Tuple[str, ...] = ()

    @property
    def allowed_documents(self) -> Tuple[str, ...]:
        return self.required_documents + tuple(
            doc for doc in self.optional_documents if doc not in self.required_documents
        )


def _split(value: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in value.split(",") if part.strip())


def kind_configs(settings: Settings | None = None) -> Dict[EntityKind, KindConfig]:
    """Build the per-kind configuration from settings."""
    settings = settings or get_settings()
    return {
        EntityKind.INSTITUTION: KindConfig(
            label="Institution",
            required_documents=_split(settings.institution_required_documents),
            optional_documents=_split(settings.institution_optional_documents),
            categories=_split(settings.institution_categories),
        ),
        EntityKind.ORGANIZATION: KindConfig(
            label="Organization",
            required_documents=_split(settings.organization_required_documents),
            optional_documents=_split(settings.organization_optional_documents),
            categories=_split(settings.organization_categories),
        ),
    }
