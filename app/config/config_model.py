from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from constants import (
    COMPOSE_SERVICE_LABEL,
    DEFAULT_TAIL_LINES,
    DEFAULT_SINCE_OFFSET_SECONDS,
    DEFAULT_BOOTSTRAP_BUFFER_SECONDS,
)

__all__ = ["Settings", "GlobalConfig", "ValidationError"]


class BaseConfigModel(BaseModel):
    model_config = ConfigDict(extra="ignore", validate_default=True)


class Settings(BaseConfigModel):
    """
    Daemon-wide settings.

    tail_lines: backlog requested the first time a container is tailed
    since_offset_seconds: how far before a restart event the resumed stream starts
    bootstrap_buffer_seconds: subtracted from "now" for containers found running at startup
    """
    log_level: str = "INFO"
    tail_lines: int = Field(default=DEFAULT_TAIL_LINES, ge=0)
    since_offset_seconds: int = Field(default=DEFAULT_SINCE_OFFSET_SECONDS, ge=0)
    bootstrap_buffer_seconds: int = Field(default=DEFAULT_BOOTSTRAP_BUFFER_SECONDS, ge=0)
    service_label: str = COMPOSE_SERVICE_LABEL
    color: bool = True

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        level = str(v).strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid log level: {v}")
        return level

    @field_validator("service_label")
    @classmethod
    def validate_service_label(cls, v):
        if not v or not v.strip():
            raise ValueError("service_label must not be empty")
        return v.strip()


class GlobalConfig(BaseConfigModel):
    services: list[str] = Field(default_factory=list)
    settings: Settings = Field(default_factory=Settings)

    @field_validator("services", mode="before")
    @classmethod
    def normalize_services(cls, v):
        if v is None:
            return []
        if isinstance(v, str):
            v = v.split(",")
        if isinstance(v, dict):
            # yaml mapping style: `services: {web: , db: }`
            v = list(v.keys())
        services = []
        for service in v:
            name = str(service).strip()
            if name and name not in services:
                services.append(name)
        return services
