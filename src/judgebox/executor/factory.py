from __future__ import annotations

from ..core.errors import ConfigError
from ..settings import Settings
from .base import IsolationBackend
from .docker import DockerBackend
from .local import LocalBackend


def create_backend(settings: Settings) -> IsolationBackend:
    if settings.backend == "docker":
        return DockerBackend(settings.docker)
    if settings.backend == "local":
        return LocalBackend(settings.jobs_dir, settings.local)
    raise ConfigError(f"unknown backend: {settings.backend!r}")
