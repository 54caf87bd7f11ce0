from functools import lru_cache
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Global SignFlow settings.
    Values are read from environment variables and the .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Project
    project_name: str = "SignFlow Core"
    debug: bool = False

    # Database
    database_url: str = "sqlite:///./signflow.db"

    # Local storage
    signflow_storage: str = "_storage"

    # S3 / MinIO storage
    s3_endpoint_url: Optional[str] = None
    s3_access_key: Optional[str] = None
    s3_secret_key: Optional[str] = None
    s3_region: str = "us-east-1"
    s3_bucket_documents: str = "signflow-documents"

    # Tenant certificates (PKCS#12)
    certificate_encryption_key: Optional[str] = None  # 64 hex chars (AES-256)
    certificate_signature_reason: str = "Digitally signed with SignFlow"
    certificate_signature_location: Optional[str] = None
    certificate_timestamp_url: Optional[str] = None
    certificate_signature_bytes_reserved: int = 8192

    # Public links sent to signers
    public_app_url: str = "http://localhost:3000"

    # Signing workflow
    default_signing_language: str = "en"
    reminder_max_count: int = 3
    verification_code_ttl_minutes: int = 10
    verification_max_attempts: int = 5

    # Finalization
    finalize_in_background: bool = False
    finalization_workers: int = 2
    finalization_claim_ttl_seconds: int = 600

    # Logging
    log_dir: str = "log"
    log_level: str = "INFO"

    def resolved_public_app_url(self) -> str:
        """Base URL used to build signing links."""
        return (self.public_app_url or "").strip().rstrip("/")


@lru_cache
def get_settings() -> Settings:
    """Return the cached global settings instance."""
    return Settings()


settings = get_settings()
