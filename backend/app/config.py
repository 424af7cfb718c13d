from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Database
    DATABASE_URL: str = Field("sqlite:///./dev.db")

    # Redis / Celery
    REDIS_URL: str = Field("redis://localhost:6379/0")
    CELERY_BROKER_URL: str | None = Field(None)
    CELERY_RESULT_BACKEND: str | None = Field(None)
    CELERY_TASK_TIME_LIMIT: int = Field(900)
    CELERY_TASK_SOFT_TIME_LIMIT: int = Field(840)

    # JWT
    JWT_SECRET_KEY: str = Field("replace-me-with-strong-secret")
    JWT_ALGORITHM: str = Field("HS256")
    ACCESS_TOKEN_EXPIRE_SECONDS: int = Field(60 * 60 * 24)

    # MinIO
    MINIO_ENDPOINT: str = Field("localhost:9000")
    MINIO_ACCESS_KEY: str = Field("minioadmin")
    MINIO_SECRET_KEY: str = Field("minioadmin")
    MINIO_SECURE: bool = Field(False)
    MINIO_BUCKET: str = Field("campus-bulk-uploads")

    # Bulk uploads
    BULK_MAX_FILE_SIZE: int = Field(5 * 1024 * 1024)
    BULK_MAX_ROWS: int = Field(500)
    BULK_SYNC_ROW_THRESHOLD: int = Field(50)
    BULK_PROGRESS_EVERY_ROWS: int = Field(10)
    BULK_PROGRESS_INTERVAL_MS: int = Field(1000)
    BULK_TASK_MAX_RETRIES: int = Field(2)
    BULK_RETRY_BACKOFF_SECONDS: int = Field(5)
    BULK_RESULT_RETENTION_SECONDS: int = Field(60 * 60 * 24)
    BULK_JOB_HISTORY_DAYS: int = Field(30)
    BULK_ARCHIVE_UPLOADS: bool = Field(True)
    BULK_DEFAULT_PASSWORD: str = Field("Welcome@123")
    PASSWORD_HASH_ROUNDS: int = Field(29000)


settings = Settings()


BULK_ALLOWED_MIME_TYPES: tuple[str, ...] = (
    "text/csv",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
)
BULK_INPUT_PREFIX: str = "bulk/inputs"
BULK_REPORT_PREFIX: str = "bulk/reports"
