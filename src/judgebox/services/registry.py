from __future__ import annotations

from dataclasses import fields
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from ..core.errors import ConfigError, UnsupportedLanguage
from ..core.models import LanguageProfile, Limits
from ..core.utils import parse_size

log = structlog.get_logger(__name__)


class LimitsConfig(BaseModel):
    cpu_seconds: Optional[float] = Field(default=None, gt=0)
    wall_seconds: Optional[float] = Field(default=None, gt=0)
    memory: Optional[int] = Field(default=None, gt=0)
    output: Optional[int] = Field(default=None, gt=0)
    pids: Optional[int] = Field(default=None, gt=0)

    @field_validator("memory", "output", mode="before")
    @classmethod
    def _size(cls, v):
        return None if v is None else parse_size(v)

    def merged(self, base: "LimitsConfig") -> "LimitsConfig":
        own = self.model_dump(exclude_none=True)
        return base.model_copy(update=own)

    def to_limits(self, what: str) -> Limits:
        missing = [k for k, v in self.model_dump().items() if v is None and k != "pids"]
        if missing:
            raise ConfigError(f"{what}: missing limits {', '.join(missing)}")
        extra = {"pids": self.pids} if self.pids is not None else {}
        return Limits(
            cpu_seconds=self.cpu_seconds,
            wall_seconds=self.wall_seconds,
            memory_bytes=self.memory,
            output_bytes=self.output,
            **extra,
        )


class DefaultsConfig(BaseModel):
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    compile_limits: LimitsConfig = Field(default_factory=LimitsConfig)
    max_limits: LimitsConfig = Field(default_factory=LimitsConfig)


class LanguageConfig(BaseModel):
    image: str
    source_file: str
    run: str
    compile: Optional[str] = None
    aliases: List[str] = Field(default_factory=list)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    compile_limits: LimitsConfig = Field(default_factory=LimitsConfig)
    max_limits: LimitsConfig = Field(default_factory=LimitsConfig)


class RegistryConfig(BaseModel):
    defaults: DefaultsConfig = Field(default_factory=DefaultsConfig)
    languages: Dict[str, LanguageConfig]


def _build_profile(lang_id: str, cfg: LanguageConfig, defaults: DefaultsConfig) -> LanguageProfile:
    where = f"language {lang_id!r}"
    limits = cfg.limits.merged(defaults.limits).to_limits(where)
    compile_limits = cfg.compile_limits.merged(defaults.compile_limits).to_limits(f"{where} compile")
    ceiling_cfg = cfg.max_limits.merged(defaults.max_limits)
    if any(v is not None for v in ceiling_cfg.model_dump().values()):
        # a partial ceiling is completed by the defaults it does not name
        ceiling_cfg = ceiling_cfg.merged(cfg.limits.merged(defaults.limits))
        ceiling = ceiling_cfg.to_limits(f"{where} max")
        for f in fields(Limits):
            if getattr(limits, f.name) > getattr(ceiling, f.name):
                raise ConfigError(f"{where}: default {f.name} exceeds its maximum")
    else:
        ceiling = limits
    try:
        return LanguageProfile(
            id=lang_id,
            image=cfg.image,
            source_file=cfg.source_file,
            run_command=cfg.run,
            compile_command=cfg.compile,
            limits=limits,
            compile_limits=compile_limits,
            max_limits=ceiling,
            aliases=tuple(a.lower() for a in cfg.aliases),
        )
    except ValueError as e:
        raise ConfigError(f"{where}: {e}") from e


class LanguageRegistry:
    """
    Immutable language-id → profile mapping, built once at startup.

    Lookups are case-insensitive and honour aliases. Nothing is mutated after
    construction, so concurrent readers need no locking.
    """

    def __init__(self, profiles: Iterable[LanguageProfile]):
        table: Dict[str, LanguageProfile] = {}
        for p in profiles:
            for key in (p.id.lower(), *p.aliases):
                if key in table and table[key].id != p.id:
                    raise ConfigError(f"language key {key!r} is claimed by {table[key].id!r} and {p.id!r}")
                table[key] = p
        self._profiles: Mapping[str, LanguageProfile] = MappingProxyType(table)
        self._ids = tuple(sorted({p.id for p in table.values()}))

    def resolve(self, language_id: str) -> LanguageProfile:
        try:
            return self._profiles[language_id.strip().lower()]
        except (KeyError, AttributeError):
            raise UnsupportedLanguage(language_id) from None

    def __contains__(self, language_id: str) -> bool:
        try:
            self.resolve(language_id)
        except UnsupportedLanguage:
            return False
        return True

    def languages(self) -> List[str]:
        return list(self._ids)

    def profiles(self) -> List[LanguageProfile]:
        return [self._profiles[i] for i in self._ids]

    # ------------ loading ------------

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any], *, source: str = "<mapping>") -> "LanguageRegistry":
        try:
            cfg = RegistryConfig.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"invalid language profiles in {source}: {e}") from e
        profiles = [_build_profile(lang_id, lc, cfg.defaults) for lang_id, lc in cfg.languages.items()]
        reg = cls(profiles)
        log.info("languages_loaded", source=source, languages=reg.languages())
        return reg

    @classmethod
    def from_file(cls, path: Path) -> "LanguageRegistry":
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError as e:
            raise ConfigError(f"language profiles not found: {path}") from e
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid YAML in {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{path}: top level must be a mapping")
        return cls.from_mapping(data, source=str(path))

    @classmethod
    def from_settings(cls, settings) -> "LanguageRegistry":
        return cls.from_file(settings.languages_file)
