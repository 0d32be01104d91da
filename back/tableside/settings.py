from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


_PROJECT_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    """
    App configuration.

    Values come from the environment first, then `config.env` / `.env` in the
    repository root or the current working directory.
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

    environment: str = Field(default="development", validation_alias="ENVIRONMENT")

    db_host: str = Field(default="localhost", validation_alias="DB_HOST")
    db_port: int = Field(default=5432, validation_alias="DB_PORT")
    db_user: str = Field(default="tableside", validation_alias="DB_USER")
    db_password: str = Field(default="tableside", validation_alias="DB_PASSWORD")
    db_name: str = Field(default="tableside", validation_alias="DB_NAME")
    # Full URL override (tests point this at sqlite)
    database_url_override: str = Field(default="", validation_alias="DATABASE_URL")

    secret_key: str = Field(default="CHANGE_THIS_IN_PRODUCTION", validation_alias="SECRET_KEY")
    algorithm: str = Field(default="HS256", validation_alias="ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, validation_alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    stripe_secret_key: str = Field(default="", validation_alias="STRIPE_SECRET_KEY")
    stripe_publishable_key: str = Field(default="", validation_alias="STRIPE_PUBLISHABLE_KEY")
    stripe_webhook_secret: str = Field(default="", validation_alias="STRIPE_WEBHOOK_SECRET")

    # ISO code used when a restaurant has neither a currency nor a known region
    default_currency: str = Field(default="TRY", validation_alias="DEFAULT_CURRENCY")

    redis_url: str = Field(default="redis://localhost:6379", validation_alias="REDIS_URL")
    notifications_enabled: bool = Field(default=True, validation_alias="NOTIFICATIONS_ENABLED")

    # How far from the reservation time a diner's order may still be linked to it
    reservation_match_window_minutes: int = Field(
        default=180, validation_alias="RESERVATION_MATCH_WINDOW_MINUTES"
    )

    cors_origins: str = Field(
        default="http://localhost:4200",
        validation_alias="CORS_ORIGINS"
    )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        # psycopg 3 driver
        return (
            f"postgresql+psycopg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )


settings = Settings()
