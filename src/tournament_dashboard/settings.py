import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from loguru import logger


DOTENV_PATH = os.getenv("DOTENV_PATH", ".env")
if os.path.exists(DOTENV_PATH):
    load_dotenv(dotenv_path=DOTENV_PATH)
else:
    logger.debug(f"No .env file found at {DOTENV_PATH}, using defaults/environment variables")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str, default: str = "") -> list[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


def _read_env() -> dict[str, Any]:
    """Every setting, keyed by its ``DashboardConfig`` field, read from the environment with its default."""
    return {
        # Credentials
        "public_id": os.getenv("NUMERAI_PUBLIC_ID", ""),
        "secret_key": os.getenv("NUMERAI_SECRET_KEY", ""),
        "models": _env_list("TOURNAMENT_MODELS", "default_model"),
        # Refresh cadence (seconds)
        "refresh_interval": float(os.getenv("DASHBOARD_REFRESH_RATE", "1.0")),
        "fast_refresh_interval": float(os.getenv("DASHBOARD_FAST_REFRESH_RATE", "0.2")),  # while a stage is running
        "input_poll_interval": float(os.getenv("DASHBOARD_INPUT_POLL", "0.1")),
        "model_update_interval": float(os.getenv("MODEL_UPDATE_INTERVAL", "30")),
        # Health checks
        "network_check_interval": float(os.getenv("NETWORK_CHECK_INTERVAL", "60")),
        "network_timeout": float(os.getenv("NETWORK_TIMEOUT", "5")),
        "network_check_url": os.getenv("NETWORK_CHECK_URL", "https://api-tournament.numer.ai"),
        "metrics_interval": float(os.getenv("METRICS_INTERVAL", "2")),
        # Pipeline chaining
        "auto_train_after_download": _env_bool("AUTO_TRAIN_AFTER_DOWNLOAD", True),
        "auto_predict_after_train": _env_bool("AUTO_PREDICT_AFTER_TRAIN", True),
        "auto_submit": _env_bool("AUTO_SUBMIT", False),
        "grace_delay": float(os.getenv("AUTO_CHAIN_GRACE_DELAY", "2.0")),
        "required_datasets": tuple(_env_list("REQUIRED_DATASETS", "train,validation,live")),
        "default_epochs": int(os.getenv("DEFAULT_EPOCHS", "100")),
        # History caps
        "max_events": int(os.getenv("MAX_EVENTS", "100")),
        "max_errors": int(os.getenv("MAX_ERRORS", "50")),
        "footer_events": int(os.getenv("FOOTER_EVENTS", "6")),
        # Paths
        "data_dir": Path(os.getenv("DATA_DIR", "./data")),
        "model_dir": Path(os.getenv("MODEL_DIR", "./models")),
        "log_dir": Path(os.getenv("LOG_DIR", "./logs")),
        "last_known_good_path": Path(os.getenv("LAST_KNOWN_GOOD_PATH", "./.dashboard_last_known_good.json")),
    }


_ENV = _read_env()

NUMERAI_PUBLIC_ID: str = _ENV["public_id"]
NUMERAI_SECRET_KEY: str = _ENV["secret_key"]
TOURNAMENT_MODELS: list[str] = _ENV["models"]

REFRESH_RATE: float = _ENV["refresh_interval"]
FAST_REFRESH_RATE: float = _ENV["fast_refresh_interval"]
INPUT_POLL_INTERVAL: float = _ENV["input_poll_interval"]
MODEL_UPDATE_INTERVAL: float = _ENV["model_update_interval"]

NETWORK_CHECK_INTERVAL: float = _ENV["network_check_interval"]
NETWORK_TIMEOUT: float = _ENV["network_timeout"]
NETWORK_CHECK_URL: str = _ENV["network_check_url"]
METRICS_INTERVAL: float = _ENV["metrics_interval"]

AUTO_TRAIN_AFTER_DOWNLOAD: bool = _ENV["auto_train_after_download"]
AUTO_PREDICT_AFTER_TRAIN: bool = _ENV["auto_predict_after_train"]
AUTO_SUBMIT: bool = _ENV["auto_submit"]
AUTO_CHAIN_GRACE_DELAY: float = _ENV["grace_delay"]
REQUIRED_DATASETS: tuple[str, ...] = _ENV["required_datasets"]
DEFAULT_EPOCHS: int = _ENV["default_epochs"]

MAX_EVENTS: int = _ENV["max_events"]
MAX_ERRORS: int = _ENV["max_errors"]
FOOTER_EVENTS: int = _ENV["footer_events"]

DATA_DIR: Path = _ENV["data_dir"]
MODEL_DIR: Path = _ENV["model_dir"]
LOG_DIR: Path = _ENV["log_dir"]
LAST_KNOWN_GOOD_PATH: Path = _ENV["last_known_good_path"]


@dataclass(slots=True)
class DashboardConfig:
    """Configuration consumed by the dashboard; defaults come from the environment."""

    refresh_interval: float = REFRESH_RATE
    fast_refresh_interval: float = FAST_REFRESH_RATE
    input_poll_interval: float = INPUT_POLL_INTERVAL
    model_update_interval: float = MODEL_UPDATE_INTERVAL
    network_check_interval: float = NETWORK_CHECK_INTERVAL
    network_timeout: float = NETWORK_TIMEOUT
    network_check_url: str = NETWORK_CHECK_URL
    metrics_interval: float = METRICS_INTERVAL
    auto_train_after_download: bool = AUTO_TRAIN_AFTER_DOWNLOAD
    auto_predict_after_train: bool = AUTO_PREDICT_AFTER_TRAIN
    auto_submit: bool = AUTO_SUBMIT
    grace_delay: float = AUTO_CHAIN_GRACE_DELAY
    required_datasets: tuple[str, ...] = REQUIRED_DATASETS
    default_epochs: int = DEFAULT_EPOCHS
    max_events: int = MAX_EVENTS
    max_errors: int = MAX_ERRORS
    footer_events: int = FOOTER_EVENTS
    data_dir: Path = DATA_DIR
    model_dir: Path = MODEL_DIR
    log_dir: Path = LOG_DIR
    last_known_good_path: Path = LAST_KNOWN_GOOD_PATH
    public_id: str = NUMERAI_PUBLIC_ID
    secret_key: str = field(default=NUMERAI_SECRET_KEY, repr=False)
    models: list[str] = field(default_factory=lambda: list(TOURNAMENT_MODELS))

    @property
    def has_credentials(self) -> bool:
        return bool(self.public_id and self.secret_key)

    @classmethod
    def from_env(cls) -> "DashboardConfig":
        """Re-read the environment instead of using the values captured at import."""
        return cls(**_read_env())
