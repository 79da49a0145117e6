from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from decimal import Decimal
from pydantic import field_validator

class Settings(BaseSettings):
    # Database settings
    POSTGRES_USER: str = 'backoffice_user'
    POSTGRES_PASSWORD: str = 'backoffice_pass'
    POSTGRES_DB: str = 'backoffice_db'
    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432

    # Redis settings
    REDIS_HOST: str = 'redis'
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    REDIS_PASSWORD: Optional[str] = None

    # MinIO settings (archivo de PDFs fiscales)
    MINIO_HOST: str = 'minio'
    MINIO_PORT: int = 9000
    MINIO_ACCESS_KEY: str = 'minioadmin'
    MINIO_SECRET_KEY: str = 'minioadmin'
    MINIO_BUCKET_NAME: str = 'fiscal-documents'
    MINIO_USE_SSL: bool = False

    # Fiscal provider (InvoiceXpress)
    FISCAL_PROVIDER_DOMAIN: str = 'app.invoicexpress.com'
    FISCAL_HTTP_TIMEOUT: float = 30.0
    FISCAL_POLL_ATTEMPTS: int = 3
    FISCAL_POLL_DELAY_SECONDS: float = 2.0
    FISCAL_ARCHIVE_PDFS: bool = False
    FISCAL_SYNC_INTERVAL_SECONDS: int = 6 * 3600

    # Fiscal defaults
    DEFAULT_TAX_RATE: Decimal = Decimal('23')
    DEFAULT_COUNTRY: str = 'Portugal'

    # Installments
    INSTALLMENT_MAX_COUNT: int = 4
    INSTALLMENT_INTERVAL_DAYS: int = 30

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    @property
    def database_url(self) -> str:
        return (
            f"postgresql+psycopg2://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def async_database_url(self) -> str:
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def redis_url(self) -> str:
        if self.REDIS_PASSWORD:
            return f"redis://:{self.REDIS_PASSWORD}@{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"
        return f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}/{self.REDIS_DB}"

    @property
    def minio_endpoint(self) -> str:
        return f"{self.MINIO_HOST}:{self.MINIO_PORT}"

    model_config = SettingsConfigDict(
        extra="allow",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True
    )

    @field_validator("DEBUG", "MINIO_USE_SSL", "FISCAL_ARCHIVE_PDFS", mode="before")
    @classmethod
    def parse_bool(cls, v):
        if isinstance(v, str):
            return v.lower().strip('"').strip("'") in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("INSTALLMENT_MAX_COUNT")
    @classmethod
    def validate_installment_max(cls, v):
        if v < 1:
            raise ValueError("INSTALLMENT_MAX_COUNT debe ser al menos 1")
        return v

settings = Settings()
