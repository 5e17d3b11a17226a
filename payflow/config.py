import os
from functools import lru_cache
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv

from payflow.errors import ConfigurationError

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


class Settings:
    """Read-only view over environment-style configuration.

    Components receive a ``Settings`` at construction and resolve the values
    they need up front, so a missing secret fails the invocation immediately
    instead of halfway through a provider call.
    """

    def __init__(self, values: Optional[Mapping[str, str]] = None):
        self._values = dict(os.environ if values is None else values)

    def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        value = self._values.get(name)
        if value is None or value == "":
            return default
        return value

    def require(self, name: str) -> str:
        value = self.get(name)
        if value is None:
            raise ConfigurationError(f"{name} is not set. Check your .env file.")
        return value

    def get_int(self, name: str, default: int) -> int:
        value = self.get(name)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            raise ConfigurationError(f"{name} must be an integer, got {value!r}")

    @property
    def app_env(self) -> str:
        return self.get("APP_ENV", "development")

    @property
    def log_level(self) -> str:
        return self.get("LOG_LEVEL", "INFO").upper()


@lru_cache()
def get_settings() -> Settings:
    return Settings()
