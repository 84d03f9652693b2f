"""
Configuration management for notebook stores.

Each store directory holds a brainsync.toml with the remote backend,
the calendar integration, sync tuning and the classifier's reserved
tags. Secrets may come from the environment instead of the file.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# tomllib only reads; writing needs tomli_w
try:
    import tomli_w
except ImportError:
    tomli_w = None  # type: ignore


CONFIG_FILENAME = "brainsync.toml"
CONFIG_VERSION = 1

STORE_PATH_ENV = "BRAINSYNC_STORE_PATH"
DEFAULT_STORE_DIR = ".brainsync"


@dataclass
class RemoteConfig:
    """Remote document API. Disabled while api_url or api_key is empty."""
    api_url: str = ""
    api_key: str = ""
    user_id: str = ""
    poll_interval: float = 15.0

    @property
    def enabled(self) -> bool:
        return bool(self.api_url and self.api_key)


@dataclass
class CalendarConfig:
    enabled: bool = False
    calendar_id: str = "primary"
    access_token: str = ""
    delete_on_remove: bool = False  # delete the event when its task is deleted


@dataclass
class SyncConfig:
    tombstone_retention: float = 300.0  # seconds an undo stays possible
    sweep_interval: float = 60.0
    max_attempts: int = 10
    backoff_base: float = 2.0
    backoff_max: float = 300.0


@dataclass
class ClassifierConfig:
    note_tag: str = "#rad"
    investment_tag: str = "#invest"


@dataclass
class StoreConfig:
    """Settings for one store directory, read from brainsync.toml."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    remote: RemoteConfig = field(default_factory=RemoteConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)

    @property
    def config_path(self) -> Path:
        """brainsync.toml inside the store directory."""
        return self.path / CONFIG_FILENAME

    def exists(self) -> bool:
        """True once the TOML file has been written."""
        return self.config_path.exists()


def get_store_path(override: Optional[Path] = None) -> Path:
    """Resolve the store directory: explicit override, env var, or ~/.brainsync."""
    if override is not None:
        return Path(override).expanduser()
    env = os.environ.get(STORE_PATH_ENV)
    if env:
        return Path(env).expanduser()
    return Path.home() / DEFAULT_STORE_DIR


def apply_env_overrides(config: StoreConfig) -> StoreConfig:
    """Fill secrets and identity from the environment when set."""
    env = os.environ
    if env.get("BRAINSYNC_API_URL"):
        config.remote.api_url = env["BRAINSYNC_API_URL"]
    if env.get("BRAINSYNC_API_KEY"):
        config.remote.api_key = env["BRAINSYNC_API_KEY"]
    if env.get("BRAINSYNC_USER_ID"):
        config.remote.user_id = env["BRAINSYNC_USER_ID"]
    if env.get("BRAINSYNC_CALENDAR_TOKEN"):
        config.calendar.access_token = env["BRAINSYNC_CALENDAR_TOKEN"]
        config.calendar.enabled = True
    return config


def load_config(store_path: Path) -> StoreConfig:
    """
    Read brainsync.toml from a store directory.

    Raises:
        FileNotFoundError: no brainsync.toml in store_path
        ValueError: newer version or unknown keys
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"No brainsync config at {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    # Validate version
    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"brainsync.toml version {version} is newer than this release supports ({CONFIG_VERSION})")

    def section(cls, name: str):
        values = data.get(name, {})
        known = set(cls.__dataclass_fields__)
        unknown = set(values) - known
        if unknown:
            raise ValueError(f"Unknown keys in [{name}]: {sorted(unknown)}")
        return cls(**values)

    return StoreConfig(
        path=store_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        remote=section(RemoteConfig, "remote"),
        calendar=section(CalendarConfig, "calendar"),
        sync=section(SyncConfig, "sync"),
        classifier=section(ClassifierConfig, "classifier"),
    )


def save_config(config: StoreConfig) -> None:
    """
    Write brainsync.toml, creating the store directory if needed.

    Writes exactly what config holds; environment overrides are applied
    to a loaded config only and so never reach the file.
    """
    if tomli_w is None:
        raise RuntimeError("Saving brainsync.toml needs tomli-w (pip install tomli-w)")

    # Ensure directory exists
    config.path.mkdir(parents=True, exist_ok=True)

    from dataclasses import asdict

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "remote": asdict(config.remote),
        "calendar": asdict(config.calendar),
        "sync": asdict(config.sync),
        "classifier": asdict(config.classifier),
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Read brainsync.toml, writing a default one first if it is missing.

    This is the main entry point for config management. Environment
    overrides are applied after loading and never written back.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        config = load_config(store_path)
    else:
        config = StoreConfig(path=store_path)
        save_config(config)
    return apply_env_overrides(config)
