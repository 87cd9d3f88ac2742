"""Application configuration using Pydantic settings."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOGGER = logging.getLogger("debug_bundle.config")

DEBUG_BUNDLE_DIR_NAME = "debug-bundle"

T = TypeVar("T")


class Settings(BaseSettings):
    """Node level settings consumed by the debug bundle service."""

    model_config = SettingsConfigDict(env_prefix="DEBUG_BUNDLE_", env_file=Path(".env"), extra="ignore")

    rpk_path: Path = Field(default=Path("/usr/bin/rpk"))
    data_directory: Path = Field(default_factory=lambda: Path.home() / ".debug_bundle")
    debug_bundle_storage_dir: Optional[Path] = None
    kvstore_path: Optional[Path] = None
    workers: int = Field(default=1, ge=1)

    def resolve_kvstore_path(self) -> Path:
        """Return the key-value database path, creating directories as needed."""

        db_path = self.kvstore_path or self.data_directory / "kvstore.db"
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return db_path

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rpk_path": str(self.rpk_path),
            "data_directory": str(self.data_directory),
            "debug_bundle_storage_dir": str(self.debug_bundle_storage_dir) if self.debug_bundle_storage_dir else None,
            "kvstore_path": str(self.kvstore_path) if self.kvstore_path else None,
            "workers": self.workers,
        }


def load_settings(path: Optional[Path] = None, **overrides: Any) -> Settings:
    """
    Load settings from the environment, overlaid with the JSON file at *path*.

    Keyword *overrides* that are not ``None`` take precedence over both.
    """
    payload: Dict[str, Any] = {}
    if path is not None:
        with Path(path).expanduser().open("r", encoding="utf-8") as handle:
            payload.update(json.load(handle))
    payload.update({key: value for key, value in overrides.items() if value is not None})
    return Settings(**payload)


class Binding(Generic[T]):
    """A live configuration value that notifies watchers when it changes."""

    def __init__(self, name: str, value: T) -> None:
        self._name = name
        self._value = value
        self._watchers: List[Callable[[], None]] = []

    def __call__(self) -> T:
        return self._value

    def watch(self, callback: Callable[[], None]) -> None:
        self._watchers.append(callback)

    def set(self, value: T) -> None:
        if value == self._value:
            return
        LOGGER.debug("Configuration %s changed to %s", self._name, value)
        self._value = value
        for callback in list(self._watchers):
            callback()


class LiveConfig:
    """Hot-reconfigurable view of :class:`Settings` shared by every worker."""

    def __init__(self, rpk_path: Path, data_directory: Path, debug_bundle_storage_dir: Optional[Path] = None) -> None:
        self.rpk_path: Binding[Path] = Binding("rpk_path", Path(rpk_path))
        self.data_directory = Path(data_directory)
        self.debug_bundle_storage_dir: Binding[Optional[Path]] = Binding(
            "debug_bundle_storage_dir",
            Path(debug_bundle_storage_dir) if debug_bundle_storage_dir else None,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "LiveConfig":
        return cls(
            rpk_path=settings.rpk_path,
            data_directory=settings.data_directory,
            debug_bundle_storage_dir=settings.debug_bundle_storage_dir,
        )

    def storage_directory(self) -> Path:
        """The configured storage directory, or ``<data_directory>/debug-bundle``."""
        configured = self.debug_bundle_storage_dir()
        if configured is not None:
            return configured
        return self.data_directory / DEBUG_BUNDLE_DIR_NAME


__all__ = ["Binding", "DEBUG_BUNDLE_DIR_NAME", "LiveConfig", "Settings", "load_settings"]
