"""Exception types raised by the judge core and its isolation backends."""
from __future__ import annotations


class JudgeError(Exception):
    """Base exception for judgebox errors."""


class ConfigError(JudgeError):
    """Language profiles or settings could not be loaded."""


class UnsupportedLanguage(JudgeError, LookupError):
    """No language profile is registered under the requested identifier."""

    def __init__(self, language: str):
        super().__init__(f"unsupported language: {language!r}")
        self.language = language


class BackendError(JudgeError):
    """The isolation backend failed for reasons not caused by the submission."""

    def __init__(self, message: str, *, command: list[str] | None = None, stderr: str = ""):
        super().__init__(message)
        self.command = command
        self.stderr = stderr

    def __str__(self) -> str:
        msg = super().__str__()
        if self.stderr:
            msg = f"{msg}: {self.stderr.strip()[:500]}"
        return msg


class ProvisionError(BackendError):
    """A sandbox could not be allocated (missing image, runtime down, host exhausted)."""


class JudgeCancelled(JudgeError):
    """The caller abandoned the run; its sandbox has been torn down."""
