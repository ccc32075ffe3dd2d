from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings
from pydantic import Field, field_validator, ConfigDict

BASE_DIR = Path(__file__).resolve().parent


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="CUSTOMS_",
    )

    environment: Literal["development", "production"] = "development"
    log_level: str = Field(default="INFO", description="Root log level")

    # Database
    database_path: Path = Field(
        default=BASE_DIR / "customs_desk.db",
        description="sqlite file holding the declarations table",
    )

    # Sync ingest
    sync_secret: str = Field(
        default="change_me_in_env",
        description="Shared secret expected in the x-sync-secret header",
    )

    # Odoo helpdesk
    odoo_url: Optional[str] = Field(default=None, description="Base URL of the Odoo instance")
    odoo_db: Optional[str] = Field(default=None, description="Odoo database name")
    odoo_username: Optional[str] = Field(default=None, description="Odoo login")
    odoo_api_key: Optional[str] = Field(default=None, description="Odoo API key")
    odoo_team_name: str = Field(default="Internal", description="Helpdesk team for new tickets")
    odoo_timeout_seconds: float = Field(default=30.0, gt=0)

    # Document store (principals, tracking)
    document_backend: Literal["local", "gcs"] = "local"
    documents_dir: Path = Field(
        default=BASE_DIR / "data", description="Root folder for the local document backend"
    )
    gcs_bucket: Optional[str] = Field(default=None, description="Bucket for the gcs backend")
    gcs_key_path: Optional[Path] = Field(
        default=None,
        description="Path to service-account json. If none, gcs_key_json or ambient credentials are used.",
    )
    gcs_key_json: Optional[str] = Field(
        default=None,
        description="Inline JSON credentials blob (base64 or raw). Takes precedence over key_path.",
    )
    principals_path: str = "FiscalRepresentationWebApp/principals.json"
    tracking_path: str = "tracking-data.json"

    # Frontend origins - can be comma-separated string or list
    allowed_origins: str | list[str] = Field(
        default="http://localhost:3000,http://127.0.0.1:3000",
        description="Comma-separated list of allowed CORS origins",
    )

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def parse_origins(cls, v):
        if isinstance(v, str):
            # Split by comma and strip whitespace
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @property
    def odoo_configured(self) -> bool:
        return all((self.odoo_url, self.odoo_db, self.odoo_username, self.odoo_api_key))


@lru_cache
def get_settings() -> Settings:
    return Settings()
