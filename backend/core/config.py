"""Core configuration with Pydantic v2 Settings."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    app_env: str = "development"
    database_url: str = "sqlite:///./einvoice.db"
    log_level: str = "INFO"
    enable_metrics: bool = True

    # Storage backend: only 'file' is shipped
    STORAGE_BACKEND: str = "file"
    # Base URI for storage; e.g. file:///var/einvoice/documents
    STORAGE_BASE_URI: str = "file:///var/einvoice/documents"
    # Public base URL for presigned download links
    STORAGE_PUBLIC_BASE_URL: str = "http://localhost:8000/api/v1/files"
    # Additional attempts per upload after the first failure
    STORAGE_UPLOAD_RETRIES: int = 2

    # Presigned URLs
    PRESIGN_HMAC_KEY: str = "dev-secret-key-change"
    PRESIGN_DEFAULT_TTL_SEC: int = 3600

    # Numbering
    INVOICE_NUMBER_PREFIX: str = "INV"
    CANCELLATION_NUMBER_PREFIX: str = "ST"
    NUMBER_PAD_WIDTH: int = 4

    # Documents
    DEFAULT_LANGUAGE: str = "de"
    DEFAULT_CURRENCY: str = "EUR"
    DEFAULT_VAT_RATE: str = "19"
    DEFAULT_PAYMENT_TERMS_DAYS: int = 30
    PDF_PRODUCER: str = "einvoice-core PDF Renderer"
    DOCUMENT_WORKERS: int = 2

    # Finalization lock older than this is considered stale and may be reclaimed
    FINALIZE_LOCK_TIMEOUT_SEC: int = 120

    # Tenant allowlist (CSV of UUIDs or JSON file)
    TENANT_ALLOWLIST: str = ""
    TENANT_ALLOWLIST_PATH: str = ""
    TENANT_ALLOWLIST_REFRESH_SEC: int = 0


# Global settings instance
settings = Settings()
