import json
import os
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field

# Store configuration in ~/.clipqueue/config.json unless CLIPQUEUE_CONFIG points elsewhere
CONFIG_DIR = os.path.join(os.path.expanduser("~"), ".clipqueue")
DEFAULT_CONFIG_PATH = os.path.join(CONFIG_DIR, "config.json")


def _hyphenate(name: str) -> str:
    return name.replace("_", "-")


class Settings(BaseModel):
    model_config = ConfigDict(alias_generator=_hyphenate, populate_by_name=True, extra="forbid")

    db_path: str = Field(default_factory=lambda: os.path.join(CONFIG_DIR, "jobs.db"))
    media_dir: str = Field(default_factory=lambda: os.path.join(CONFIG_DIR, "media"))

    # dispatcher
    max_concurrent_jobs: int = Field(default=3, ge=1)
    poll_interval: float = Field(default=5.0, gt=0)
    idle_interval: float = Field(default=10.0, gt=0)
    job_timeout: Optional[float] = None

    # retries
    max_retries: int = Field(default=3, ge=0)
    backoff_base: float = Field(default=0.0, ge=0)
    classify_failures: bool = True

    # reaper
    retention_days: float = Field(default=7, gt=0)
    reaper_interval: float = Field(default=3600.0, gt=0)
    stuck_job_timeout: float = Field(default=7200.0, gt=0)

    # "module:factory" returning a Services bundle, used by `clipqueue worker start`
    collaborators: Optional[str] = None


def config_path() -> str:
    return os.environ.get("CLIPQUEUE_CONFIG", DEFAULT_CONFIG_PATH)


def load_config(path: Optional[str] = None) -> Settings:
    path = path or config_path()
    if not os.path.exists(path):
        settings = Settings()
        save_config(settings, path)
        return settings
    with open(path, "r") as f:
        return Settings.model_validate(json.load(f))


def save_config(settings: Settings, path: Optional[str] = None):
    path = path or config_path()
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    with open(path, "w") as f:
        json.dump(settings.model_dump(by_alias=True), f, indent=2)


def coerce_value(value: str) -> Any:
    """Convert a CLI string to the appropriate JSON type."""
    lowered = value.lower()
    if lowered in ("true", "false"):
        return lowered == "true"
    if lowered in ("null", "none"):
        return None
    if value.isdigit():
        return int(value)
    if value.replace('.', '', 1).isdigit():
        return float(value)
    return value


def set_value(key: str, value: str, path: Optional[str] = None) -> Settings:
    """Validate and persist a single hyphenated key. Raises pydantic's ValidationError."""
    current = load_config(path).model_dump(by_alias=True)
    current[key] = coerce_value(value)
    settings = Settings.model_validate(current)
    save_config(settings, path)
    return settings
