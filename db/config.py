from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings
from sqlalchemy import URL, make_url


class Settings(BaseSettings):
    # Core Application Settings
    app_name: str = "sqlite-to-postgres"
    version: str = "1.0.0"
    logging_level: str = "INFO"

    # Source SQLite Settings
    database_filename: str = ".tmp/data.db"
    include_system_tables: bool = False
    system_table_prefixes: list[str] = Field(default_factory=lambda: ["strapi_"])

    # Target PostgreSQL Settings
    database_url: str | None = None
    database_host: str = "localhost"
    database_port: int = 5432
    database_name: str = "strapi"
    database_username: str = "postgres"
    database_password: str | None = None
    database_ssl: bool = False
    database_schema: str = "public"
    database_max_connections: int = 10
    database_connect_timeout: int = 30

    # Migration Settings
    migration_batch_size: int = Field(default=1000, gt=0)
    export_dir: str = "exports"
    backup_dir: str = "backups"
    create_backup: bool = True
    validate_after_import: bool = True
    confirm_delay_seconds: int = 5
    foreign_key_table_aliases: dict[str, str] = Field(
        default_factory=lambda: {
            "created_by": "admin_users",
            "updated_by": "admin_users",
        }
    )

    @model_validator(mode="after")
    def normalize_database_url(self) -> "Settings":
        if self.database_url:
            url = make_url(self.database_url)
            if url.drivername in ("postgres", "postgresql", "postgresql+psycopg2"):
                url = url.set(drivername="postgresql+asyncpg")
            self.database_url = url.render_as_string(hide_password=False)
        return self

    @property
    def postgres_uri(self) -> str:
        """Async SQLAlchemy URI for the target database."""
        if self.database_url:
            return self.database_url
        url = URL.create(
            "postgresql+asyncpg",
            username=self.database_username,
            password=self.database_password,
            host=self.database_host,
            port=self.database_port,
            database=self.database_name,
        )
        return url.render_as_string(hide_password=False)

    @property
    def source_path(self) -> Path:
        return Path(self.database_filename)

    def sanitized_connection(self) -> dict:
        """Connection details safe to log or persist (no password)."""
        url = make_url(self.postgres_uri)
        return {
            "host": url.host,
            "port": url.port,
            "database": url.database,
            "user": url.username,
            "schema": self.database_schema,
            "ssl": self.database_ssl,
            "max_connections": self.database_max_connections,
        }

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
