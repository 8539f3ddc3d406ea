"""Configuration management for Code Deployer."""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from .exceptions import ConfigurationInvalidError, ConfigurationMissingError
from .models import RepositoryEntry

logger = logging.getLogger(__name__)

CONFIG_DIR_NAME = ".code-deployer"
CONFIG_FILE_NAME = "config.json"
DEFAULT_POLICY_NAME = "default"

_REPOSITORY_LIST = TypeAdapter(List[RepositoryEntry])


class BuildConfig(BaseModel):
    """Configuration for the build command."""

    command: List[str] = Field(
        default=[
            "dotnet",
            "build",
            "{solution}",
            "--configuration",
            "{configuration}",
        ],
        description="Build command; {solution} and {configuration} are substituted",
    )
    timeout_seconds: int = Field(
        default=1800, description="Maximum build duration in seconds"
    )


class SchedulerConfig(BaseModel):
    """Configuration for the polling scheduler."""

    retry_interval_seconds: float = Field(
        default=30.0,
        description="Delay before the next cycle when the next check time is already past",
    )
    max_sleep_seconds: float = Field(
        default=3600.0, description="Upper bound for a single wait between cycles"
    )


class ExceptionPolicyConfig(BaseModel):
    """How an exception handling policy treats errors raised by backend calls."""

    action: Literal["swallow", "rethrow"] = Field(
        default="swallow",
        description="'swallow' logs and returns the default value, 'rethrow' propagates",
    )
    rethrow_types: List[str] = Field(
        default_factory=list,
        description="Exception class names that are always propagated",
    )


def _default_policies() -> Dict[str, ExceptionPolicyConfig]:
    return {
        DEFAULT_POLICY_NAME: ExceptionPolicyConfig(
            action="swallow", rethrow_types=["MemoryError", "RecursionError"]
        )
    }


class Config(BaseModel):
    """Main configuration for Code Deployer."""

    repositories_file: Path = Field(
        default=Path("repositories.json"),
        description="Repository store, relative paths resolve against the config directory",
    )
    process_timeout_seconds: float = Field(
        default=300.0, description="How long ExecuteFile actions may run"
    )
    build: BuildConfig = Field(default_factory=BuildConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    exception_policies: Dict[str, ExceptionPolicyConfig] = Field(
        default_factory=_default_policies
    )
    default_policy_name: str = Field(default=DEFAULT_POLICY_NAME)
    log_level: str = Field(default="INFO")

    @field_validator("repositories_file", mode="before")
    @classmethod
    def convert_path(cls, v: Any) -> Path:
        """Convert string paths to Path objects."""
        if isinstance(v, str):
            return Path(v)
        if isinstance(v, Path):
            return v
        raise ValueError(f"Expected str or Path, got {type(v)}")

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


class ConfigManager:
    """Manages configuration loading, saving, and discovery."""

    DEFAULT_CONFIG_PATH = Path(CONFIG_DIR_NAME) / CONFIG_FILE_NAME

    def __init__(self, config_path: Optional[Path] = None):
        self.config_path = Path(config_path or self.DEFAULT_CONFIG_PATH)
        self._config: Optional[Config] = None

    @classmethod
    def find_config(cls, start_dir: Optional[Path] = None) -> Optional[Path]:
        """Walk up from start_dir looking for .code-deployer/config.json."""
        current = (start_dir or Path.cwd()).resolve()
        for directory in [current, *current.parents]:
            candidate = directory / CONFIG_DIR_NAME / CONFIG_FILE_NAME
            if candidate.is_file():
                return candidate
        return None

    @classmethod
    def create_with_backtrack(cls, start_dir: Optional[Path] = None) -> "ConfigManager":
        """Create a manager for the nearest config, or the default location."""
        found = cls.find_config(start_dir)
        if found is not None:
            return cls(found)
        return cls((start_dir or Path.cwd()) / cls.DEFAULT_CONFIG_PATH)

    def load(self) -> Config:
        """Load configuration from file or fall back to defaults."""
        if self.config_path.exists():
            try:
                with open(self.config_path, "r") as f:
                    data = json.load(f)
                self._config = Config(**data)
            except (json.JSONDecodeError, ValidationError) as e:
                raise ConfigurationInvalidError(
                    f"Failed to load config from {self.config_path}", str(e)
                )
        else:
            logger.debug(f"No config at {self.config_path}, using defaults")
            self._config = Config()

        return self._config

    def get_config(self) -> Config:
        if self._config is None:
            return self.load()
        return self._config

    def save(self, config: Optional[Config] = None) -> None:
        """Save configuration to file."""
        if config is None:
            config = self._config

        if config is None:
            raise ValueError("No configuration to save")

        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        with open(self.config_path, "w") as f:
            json.dump(config.model_dump(mode="json"), f, indent=2)
        self._config = config

    def get_repositories_path(self) -> Path:
        """Absolute path of the repository store."""
        repositories_file = self.get_config().repositories_file
        if repositories_file.is_absolute():
            return repositories_file
        return (self.config_path.parent / repositories_file).resolve()


def load_repositories(path: Optional[Path]) -> List[RepositoryEntry]:
    """Read the ordered repository list from the store at path.

    Raises:
        ValueError: If path is None
        ConfigurationMissingError: If the file does not exist
        ConfigurationInvalidError: If the content is not a valid repository list
    """
    if path is None:
        raise ValueError("A valid path to the repository store has not been provided")

    path = Path(path)
    if not path.exists():
        raise ConfigurationMissingError(
            f"The repository store does not exist: {path}"
        )

    try:
        return _REPOSITORY_LIST.validate_json(path.read_bytes())
    except ValidationError as e:
        raise ConfigurationInvalidError(
            f"Invalid repository store {path}", str(e)
        )


def save_repositories(repositories: List[RepositoryEntry], path: Optional[Path]) -> None:
    """Write the repository list to path atomically.

    Uses the write-temp, fsync, rename pattern so a crash never leaves a
    truncated store behind.
    """
    if repositories is None:
        raise ValueError("A valid list of repositories has not been provided")
    if path is None:
        raise ValueError("A valid path to the repository store has not been provided")

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp_fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent), prefix=f".{path.name}_", suffix=".tmp"
    )
    try:
        with os.fdopen(tmp_fd, "wb") as f:
            f.write(_REPOSITORY_LIST.dump_json(list(repositories), indent=2))
            f.flush()
            os.fsync(f.fileno())

        os.replace(tmp_path, str(path))
        logger.debug(f"Saved {len(repositories)} repositories to {path}")

    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
