import os
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    kafka_bootstrap: str = os.getenv("KAFKA_BOOTSTRAP", "kafka:9092")
    jwt_issuer: str = os.getenv("JWT_ISSUER", "paywall-settlement")
    jwt_secret: str = os.getenv("JWT_SECRET", "dev-secret-change")
    internal_jwt_ttl_seconds: int = int(os.getenv("INTERNAL_JWT_TTL_SECONDS", "300"))

    # DATABASE_URL wins over the mysql_* parts when set
    database_url: str = os.getenv("DATABASE_URL", "")
    mysql_user: str = os.getenv("MYSQL_USER", "root")
    mysql_password: str = os.getenv("MYSQL_PASSWORD", "root")
    mysql_host: str = os.getenv("MYSQL_HOST", "mysql")
    mysql_db: str = os.getenv("MYSQL_DB", "ledger")
    mysql_port: int = int(os.getenv("MYSQL_PORT", "3306"))

    redis_url: str = os.getenv("REDIS_URL", "redis://redis:6379/0")
    notification_dedup_ttl_seconds: int = int(os.getenv("NOTIFICATION_DEDUP_TTL_SECONDS", "604800"))

    stripe_webhook_secret: str = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    stripe_signature_tolerance: int = int(os.getenv("STRIPE_SIGNATURE_TOLERANCE", "300"))

    resend_api_key: str = os.getenv("RESEND_API_KEY", "")
    resend_api_url: str = os.getenv("RESEND_API_URL", "https://api.resend.com/emails")
    resend_from_email: str = os.getenv("RESEND_FROM_EMAIL", "Granted <no-reply@granted.gg>")
    public_base_url: str = os.getenv("PUBLIC_BASE_URL", "http://localhost:3000")

    outbox_poll_interval: float = float(os.getenv("OUTBOX_POLL_INTERVAL", "0.5"))
    # exposes GET /mint-internal-token; local development only
    allow_dev_token_mint: bool = os.getenv("ALLOW_DEV_TOKEN_MINT", "false").lower() in ("1", "true", "yes")

    def sqlalchemy_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"mysql+mysqldb://{self.mysql_user}:{self.mysql_password}"
            f"@{self.mysql_host}:{self.mysql_port}/{self.mysql_db}"
        )

settings = Settings()
