from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    """
    App configuration shared by the API and the WebSocket bridge.

    Values come from the environment, then `config.env` / `.env` at the
    repository root (or the current directory).
    """

    model_config = SettingsConfigDict(
        env_file=(
            str(_PROJECT_ROOT / "config.env"),
            str(_PROJECT_ROOT / ".env"),
            "config.env",
            ".env",
        ),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    db_host: str = Field(default="localhost", validation_alias="DB_HOST")
    db_port: int = Field(default=5432, validation_alias="DB_PORT")
    db_user: str = Field(default="warung", validation_alias="DB_USER")
    db_password: str = Field(default="warung", validation_alias="DB_PASSWORD")
    db_name: str = Field(default="warung", validation_alias="DB_NAME")
    # Full SQLAlchemy URL; wins over the DB_* parts when set (e.g. sqlite:///warung.db)
    database_url_override: str = Field(default="", validation_alias="DATABASE_URL")

    secret_key: str = Field(default="CHANGE_THIS_IN_PRODUCTION", validation_alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", validation_alias="ALGORITHM")
    table_token_expire_days: int = Field(default=365, validation_alias="TABLE_TOKEN_EXPIRE_DAYS")
    # Shared secret for staff-only endpoints (issuing table QR tokens); empty disables them
    staff_api_key: str = Field(default="", validation_alias="STAFF_API_KEY")

    cors_origins: str = Field(
        default="http://localhost:3000",
        validation_alias="CORS_ORIGINS"
    )

    # Real-time events
    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")
    event_backend: str = Field(default="redis", validation_alias="EVENT_BACKEND")  # "redis" or "local"

    # Table session leases: a lease dies after interval * multiplier without a heartbeat
    heartbeat_interval_seconds: float = Field(default=5.0, validation_alias="HEARTBEAT_INTERVAL_SECONDS")
    liveness_multiplier: float = Field(default=3.0, validation_alias="LIVENESS_MULTIPLIER")

    # Comma-separated categories that skip the cooking stage
    drink_categories: str = Field(default="Minuman", validation_alias="DRINK_CATEGORIES")

    # How many times a lost check-then-set claim is retried before giving up
    transition_attempts: int = Field(default=3, validation_alias="TRANSITION_ATTEMPTS")

    # Bridge -> API base URL, and the public ordering page linked from QR codes
    api_url: str = Field(default="http://localhost:8020", validation_alias="API_URL")
    order_url: str = Field(default="http://localhost:3000/order", validation_alias="ORDER_URL")
    # Bridge WebSocket base URL used by client connections
    ws_url: str = Field(default="ws://localhost:8021", validation_alias="WS_URL")

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        # SQLModel uses SQLAlchemy under the hood; this uses the psycopg driver (v3).
        return (
            f"postgresql+psycopg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    @property
    def liveness_window_seconds(self) -> float:
        return self.heartbeat_interval_seconds * self.liveness_multiplier

    @property
    def drink_category_set(self) -> frozenset[str]:
        return frozenset(
            category.strip().lower()
            for category in self.drink_categories.split(",")
            if category.strip()
        )


settings = Settings()
