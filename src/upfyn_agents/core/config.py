"""Configuration loading and validation.

Two YAML files feed the runtime configuration:

- ``<config dir>/config.yaml``: global defaults (agent, worktree, sessions)
- ``<repo>/.upfyn/config.yaml``: per-project overrides (base branch, files to
  copy into new worktrees, an init script)

Both are optional. They are merged into a single :class:`AppConfig` that the
orchestrator consumes.
"""

import logging
import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

APP_DIR_NAME = "upfyn-agents"
PROJECT_DIR_NAME = ".upfyn"
CONFIG_FILENAME = "config.yaml"

BackendName = Literal["tmux", "wt", "shell"]


class AppSettings(BaseSettings):
    """Environment overrides (UPFYN_CONFIG_DIR, UPFYN_LOG_LEVEL, ...)."""

    model_config = SettingsConfigDict(env_prefix="UPFYN_", extra="ignore")

    config_dir: Optional[Path] = None
    log_level: str = "INFO"
    session_backend: Optional[BackendName] = None


def config_base_dir(settings: Optional[AppSettings] = None) -> Path:
    """Per-platform directory holding config, databases, logs and sessions."""
    settings = settings or AppSettings()
    if settings.config_dir is not None:
        return settings.config_dir.expanduser()

    home = Path.home()
    if sys.platform == "darwin":
        return home / "Library" / "Application Support" / APP_DIR_NAME
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        base = Path(appdata) if appdata else home / "AppData" / "Roaming"
        return base / APP_DIR_NAME
    xdg = os.environ.get("XDG_CONFIG_HOME")
    base = Path(xdg) if xdg else home / ".config"
    return base / APP_DIR_NAME


class WorktreeSettings(BaseModel):
    """Git worktree behaviour."""
    auto_cleanup: bool = True
    base_branch: Optional[str] = None  # None = the repository's main line


class SessionSettings(BaseModel):
    """Session backend and acceptance-prompt watcher settings."""
    backend: Optional[BackendName] = None  # None = auto-detect
    capture_lines: int = 50

    # Acceptance watcher timings
    acceptance_initial_delay: float = 3.0
    acceptance_interval: float = 2.0
    acceptance_max_attempts: int = 30

    @field_validator("acceptance_initial_delay", "acceptance_interval")
    @classmethod
    def validate_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError(f"acceptance timings must be >= 0, got {v}")
        return v

    @field_validator("acceptance_max_attempts", "capture_lines")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"value must be >= 1, got {v}")
        return v


class GlobalConfig(BaseModel):
    """Contents of the global config.yaml."""
    default_agent: str = "claude"
    worktree: WorktreeSettings = Field(default_factory=WorktreeSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)


def _split_copy_files(v: Any) -> List[str]:
    if v is None:
        return []
    if isinstance(v, str):
        v = v.split(",")
    return [str(item).strip() for item in v if str(item).strip()]


class ProjectConfig(BaseModel):
    """Contents of <repo>/.upfyn/config.yaml."""
    default_agent: Optional[str] = None
    base_branch: Optional[str] = None
    github_url: Optional[str] = None
    copy_files: List[str] = Field(default_factory=list)  # "a,b" or a YAML list
    init_script: Optional[str] = None

    @field_validator("copy_files", mode="before")
    @classmethod
    def parse_copy_files(cls, v: Any) -> List[str]:
        return _split_copy_files(v)


class AppConfig(BaseModel):
    """Merged global + project configuration."""
    default_agent: str = "claude"
    auto_cleanup: bool = True
    base_branch: Optional[str] = None  # None = the repository's main line
    github_url: Optional[str] = None
    copy_files: List[str] = Field(default_factory=list)
    init_script: Optional[str] = None
    session: SessionSettings = Field(default_factory=SessionSettings)


def merge_config(global_config: GlobalConfig, project_config: ProjectConfig) -> AppConfig:
    """Project values win over global ones where set."""
    return AppConfig(
        default_agent=project_config.default_agent or global_config.default_agent,
        auto_cleanup=global_config.worktree.auto_cleanup,
        base_branch=project_config.base_branch or global_config.worktree.base_branch,
        github_url=project_config.github_url,
        copy_files=list(project_config.copy_files),
        init_script=project_config.init_script,
        session=global_config.session.model_copy(),
    )


# Module-level mtime-based config cache: path -> (parsed_config, file_mtime)
_config_cache: Dict[str, tuple] = {}


def _get_cached_or_load(resolved_path: Path, loader):
    """Return cached config if file mtime unchanged, else reload."""
    key = str(resolved_path)
    try:
        current_mtime = resolved_path.stat().st_mtime
    except FileNotFoundError:
        _config_cache.pop(key, None)
        return None

    cached = _config_cache.get(key)
    if cached is not None:
        cached_result, cached_mtime = cached
        if cached_mtime == current_mtime:
            return cached_result

    result = loader(resolved_path)
    _config_cache[key] = (result, current_mtime)
    return result


def clear_config_cache() -> None:
    """Clear the module-level config cache. Useful for tests."""
    _config_cache.clear()


def _read_yaml(path: Path) -> dict:
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a mapping at the top level")
    return _expand_env_vars(data)


def _load_global_from_file(path: Path) -> GlobalConfig:
    return GlobalConfig(**_read_yaml(path))


def _load_project_from_file(path: Path) -> ProjectConfig:
    return ProjectConfig(**_read_yaml(path))


def load_global_config(config_path: Optional[Path] = None) -> GlobalConfig:
    """Load the global config, falling back to defaults when absent."""
    if config_path is None:
        config_path = config_base_dir() / CONFIG_FILENAME

    if not config_path.exists():
        logger.debug(f"Global config not found at {config_path}, using defaults")
        return GlobalConfig()

    result = _get_cached_or_load(config_path.resolve(), _load_global_from_file)
    return result if result is not None else GlobalConfig()


def project_config_path(project_path: Path) -> Path:
    return Path(project_path) / PROJECT_DIR_NAME / CONFIG_FILENAME


def load_project_config(project_path: Optional[Path]) -> ProjectConfig:
    """Load <repo>/.upfyn/config.yaml, or defaults."""
    if project_path is None:
        return ProjectConfig()

    config_path = project_config_path(project_path)
    if not config_path.exists():
        return ProjectConfig()

    result = _get_cached_or_load(config_path.resolve(), _load_project_from_file)
    return result if result is not None else ProjectConfig()


def load_config(
    project_path: Optional[Path] = None,
    global_config_path: Optional[Path] = None,
) -> AppConfig:
    """Load and merge global and project configuration."""
    global_config = load_global_config(global_config_path)
    project_config = load_project_config(project_path)
    config = merge_config(global_config, project_config)

    backend_override = AppSettings().session_backend
    if backend_override:
        config.session.backend = backend_override
    return config


def save_global_config(config: GlobalConfig, config_path: Optional[Path] = None) -> Path:
    """Write the global config as YAML."""
    if config_path is None:
        config_path = config_base_dir() / CONFIG_FILENAME
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        yaml.safe_dump(config.model_dump(), f, sort_keys=False)
    return config_path


def _expand_env_vars(data: Any, _path: str = "") -> Any:
    """Recursively expand ${VAR} references in config data."""
    if isinstance(data, dict):
        return {k: _expand_env_vars(v, f"{_path}.{k}" if _path else k) for k, v in data.items()}
    elif isinstance(data, list):
        return [_expand_env_vars(item, f"{_path}[{i}]") for i, item in enumerate(data)]
    elif isinstance(data, str) and data.startswith("${") and data.endswith("}"):
        env_var = data[2:-1]
        value = os.environ.get(env_var)
        if value is None:
            logger.warning(
                f"Environment variable '{env_var}' not set (referenced at config path: {_path or 'root'}). "
                f"The literal string '{data}' will be used."
            )
            return data
        return value
    return data
