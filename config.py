"""
Runtime configuration for the Storefront API

Every value is read from the environment (or a local .env file) and surfaced
unchanged: strings stay strings, empty strings stay empty and missing keys are
None. Only the values the server cannot start without are checked, through
Settings.require().
"""

import logging
import sys
from functools import lru_cache
from typing import Optional, List

from loguru import logger
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigError(RuntimeError):
    """A required configuration value is missing."""


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    environment: Optional[str] = Field(None, validation_alias="NODE_ENV")
    port: Optional[str] = Field(None, validation_alias="PORT")
    db_url: Optional[str] = Field(None, validation_alias="DB_URL")
    db_name: str = Field("storefront", validation_alias="DB_NAME")

    # Auth keys
    clerk_publishable_key: Optional[str] = Field(None, validation_alias="CLERK_PUBLISHABLE_KEY")
    clerk_secret_key: Optional[str] = Field(None, validation_alias="CLERK_SECRET_KEY")
    secret_key: str = Field("supersecretkey", validation_alias="SECRET_KEY")
    admin_email: Optional[str] = Field(None, validation_alias="ADMIN_EMAIL")

    # Background jobs and media service
    inngest_signing_key: Optional[str] = Field(None, validation_alias="INNGEST_SIGNING_KEY")
    cloudinary_api_key: Optional[str] = Field(None, validation_alias="CLOUDINARY_API_KEY")
    cloudinary_api_secret: Optional[str] = Field(None, validation_alias="CLOUDINARY_API_SECRET")
    cloudinary_cloud_name: Optional[str] = Field(None, validation_alias="CLOUDINARY_CLOUD_NAME")

    log_level: str = Field("INFO", validation_alias="LOG_LEVEL")
    upload_dir: str = Field("uploads", validation_alias="UPLOAD_DIR")
    max_upload_mb: int = Field(5, validation_alias="MAX_UPLOAD_MB")
    admin_dist_dir: str = Field("../admin/dist", validation_alias="ADMIN_DIST_DIR")
    cors_origins: str = Field("*", validation_alias="CORS_ORIGINS")

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def allowed_origins(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024

    def require(self, name: str) -> str:
        """Return a configured value, raising ConfigError when it is unset or empty."""
        value = getattr(self, name)
        if value is None or value == "":
            env_name = name.upper()
            field = type(self).model_fields.get(name)
            if field is not None and isinstance(field.validation_alias, str):
                env_name = field.validation_alias
            raise ConfigError(f"{env_name} environment variable is not defined")
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()


class InterceptHandler(logging.Handler):
    """Forward stdlib logging records (uvicorn, pymongo) into loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        if record.name == "uvicorn.access":
            return
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def configure_logging(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()

    logger.remove()
    logger.configure(extra={"request_id": "-"})
    logger.add(
        sys.stderr,
        level=settings.log_level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "[<cyan>{extra[request_id]}</cyan>] | "
            "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
            "<level>{message}</level>"
        ),
        colorize=True,
        backtrace=not settings.is_production,
        diagnose=not settings.is_production,
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    for name in ("uvicorn", "uvicorn.error", "pymongo"):
        std_logger = logging.getLogger(name)
        std_logger.handlers = [InterceptHandler()]
        std_logger.propagate = False
    # pymongo is chatty at DEBUG
    logging.getLogger("pymongo").setLevel(logging.WARNING)
