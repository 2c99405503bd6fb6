from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.errors import ConfigError

PACKAGED_LANGUAGES = Path(__file__).resolve().parent / "conf" / "languages.yaml"


class DockerSettings(BaseModel):
    binary: str = "docker"
    network: str = "none"
    cpus: float = 1.0
    # uid:gid of the non-root "executor" user baked into the judge images
    user: str = "1001:1001"
    workdir: str = "/sandbox"
    name_prefix: str = "judgebox-"
    tmpfs_size: str = "64m"
    # bound on plain CLI calls (create/cp/update/rm), not on submission code
    command_timeout_s: float = 60.0


class LocalSettings(BaseModel):
    use_cgroup: bool = False
    cgroup_base: Optional[Path] = None
    namespaces: bool = False
    nofile: int = 64
    # RLIMIT_AS = memory limit * factor; None leaves address space unlimited
    address_space_factor: Optional[float] = None
    poll_interval_s: float = 0.02
    path: str = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"


class Settings(BaseSettings):
    backend: Literal["docker", "local"] = "docker"
    languages_file: Path = PACKAGED_LANGUAGES
    jobs_dir: Path = Path("jobs")
    max_workers: int = 4
    comparator: str = "default"

    log_level: str = "INFO"
    log_json: bool = True

    docker: DockerSettings = Field(default_factory=DockerSettings)
    local: LocalSettings = Field(default_factory=LocalSettings)

    model_config = SettingsConfigDict(env_prefix="SBX_", env_nested_delimiter="__", extra="ignore")


def _read_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        return {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: top level must be a mapping")
    return data


def load_settings(conf_path: Optional[Path] = None) -> Settings:
    """Settings from conf/judgebox.yaml (or SBX_CONF), overridden by SBX_* env vars."""
    path = conf_path or Path(os.environ.get("SBX_CONF", "conf/judgebox.yaml"))
    data = _read_yaml(path)

    env = Settings()
    explicit = env.model_fields_set
    merged: Dict[str, Any] = dict(data)
    for name in explicit:
        value = getattr(env, name)
        if isinstance(value, BaseModel) and isinstance(merged.get(name), dict):
            # nested env vars refine the YAML section instead of replacing it
            section = dict(merged[name])
            section.update(value.model_dump(exclude_unset=True))
            merged[name] = section
        else:
            merged[name] = value
    try:
        return Settings.model_validate(merged)
    except ValueError as e:
        raise ConfigError(f"invalid settings in {path}: {e}") from e
