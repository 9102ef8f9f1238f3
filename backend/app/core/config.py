from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    app_name: str = "changeflow"
    env: str = "development"
    log_level: str = "INFO"

    jwt_secret_key: str = "change-me"
    jwt_algorithm: str = "HS256"
    jwt_expire_minutes: int = 60

    database_url: str = ""
    postgres_host: str = "postgres"
    postgres_db: str = "changeflow"
    postgres_user: str = "changeflow"
    postgres_password: str = "changeflow"
    postgres_port: int = 5432

    redis_url: str = "redis://redis:6379/0"
    cors_allowed_origins: list[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Collaborator calls (repository, blob store, mail transport)
    collaborator_timeout_seconds: float = 10.0
    read_retry_attempts: int = 3

    # Lifecycle policy
    delegated_implementers: list[str] = []

    # Attachments
    max_attachment_bytes: int = 10 * 1024 * 1024
    blob_backend: str = "local"  # local | s3
    blob_root: str = "./var/attachments"
    blob_public_base_url: str = ""
    s3_bucket: str = ""
    s3_region: str = "us-east-1"
    s3_url_expiry_seconds: int = 3600

    # Notifications
    mail_transport: str = "logging"  # logging | resend
    notification_sender: str = "change-requests@changeflow.local"
    resend_api_key: str = ""
    resend_api_url: str = "https://api.resend.com/emails"
    notifications_via_worker: bool = False
    notification_max_retries: int = 3

    @field_validator("cors_allowed_origins", "delegated_implementers", mode="before")
    @classmethod
    def parse_comma_separated(cls, value):
        if isinstance(value, str):
            if value.strip() == "":
                return []
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @model_validator(mode="after")
    def validate_production_security(self):
        if self.env.strip().lower() in {"production", "prod"} and self.jwt_secret_key == "change-me":
            raise ValueError("JWT_SECRET_KEY must be set to a secure value in production")
        if self.mail_transport == "resend" and not self.resend_api_key:
            raise ValueError("RESEND_API_KEY is required when MAIL_TRANSPORT=resend")
        return self

    @property
    def postgres_dsn(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )


settings = Settings()
