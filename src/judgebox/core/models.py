from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from pathlib import PurePosixPath
from typing import Any, Iterable, Mapping, Optional, Tuple, Union


class Phase(str, Enum):
    COMPILE = "compile"
    RUN = "run"


class RunState(str, Enum):
    PENDING = "Pending"
    PROVISIONED = "Provisioned"
    COMPILED = "Compiled"
    RAN = "Ran"
    FINALIZED = "Finalized"
    ABORTED = "Aborted"


class Verdict(str, Enum):
    # declaration order doubles as severity for Verdict.worst()
    ACCEPTED = "Accepted"
    WRONG_ANSWER = "WrongAnswer"
    OUTPUT_LIMIT_EXCEEDED = "OutputLimitExceeded"
    RUNTIME_ERROR = "RuntimeError"
    TIME_LIMIT_EXCEEDED = "TimeLimitExceeded"
    MEMORY_LIMIT_EXCEEDED = "MemoryLimitExceeded"
    COMPILE_ERROR = "CompileError"
    INTERNAL_ERROR = "InternalError"

    @classmethod
    def worst(cls, verdicts: Iterable["Verdict"]) -> "Verdict":
        order = list(cls)
        return max(verdicts, key=order.index, default=cls.ACCEPTED)

    @property
    def is_system_fault(self) -> bool:
        return self is Verdict.INTERNAL_ERROR

    def short_name(self) -> str:
        return _SHORT_NAMES[self]


_SHORT_NAMES = {
    Verdict.ACCEPTED: "AC",
    Verdict.WRONG_ANSWER: "WA",
    Verdict.OUTPUT_LIMIT_EXCEEDED: "OLE",
    Verdict.RUNTIME_ERROR: "RE",
    Verdict.TIME_LIMIT_EXCEEDED: "TLE",
    Verdict.MEMORY_LIMIT_EXCEEDED: "MLE",
    Verdict.COMPILE_ERROR: "CE",
    Verdict.INTERNAL_ERROR: "IE",
}


@dataclass(frozen=True)
class LimitOverrides:
    cpu_seconds: Optional[float] = None
    wall_seconds: Optional[float] = None
    memory_bytes: Optional[int] = None
    output_bytes: Optional[int] = None
    pids: Optional[int] = None


@dataclass(frozen=True)
class Limits:
    cpu_seconds: float
    wall_seconds: float
    memory_bytes: int
    output_bytes: int
    pids: int = 64

    def __post_init__(self):
        for f in fields(self):
            if getattr(self, f.name) <= 0:
                raise ValueError(f"limit {f.name} must be positive")

    def clamp(self, overrides: Optional[LimitOverrides], ceiling: Optional["Limits"] = None) -> "Limits":
        """Apply requested overrides, never exceeding ``ceiling`` (defaults to self)."""
        ceiling = ceiling or self
        if overrides is None:
            return self
        update = {}
        for f in fields(self):
            requested = getattr(overrides, f.name)
            if requested is None:
                continue
            update[f.name] = min(requested, getattr(ceiling, f.name))
        return replace(self, **update)


@dataclass(frozen=True)
class SourceFile:
    name: str
    content: Union[str, bytes]

    def __post_init__(self):
        p = PurePosixPath(self.name)
        if not self.name or p.is_absolute() or ".." in p.parts or self.name.startswith("~"):
            raise ValueError(f"invalid submission file name: {self.name!r}")

    def data(self) -> bytes:
        if isinstance(self.content, bytes):
            return self.content
        return self.content.encode("utf-8")


@dataclass(frozen=True)
class LanguageProfile:
    id: str
    image: str
    source_file: str
    run_command: str
    limits: Limits
    compile_limits: Limits
    compile_command: Optional[str] = None
    max_limits: Optional[Limits] = None
    aliases: Tuple[str, ...] = ()

    @property
    def compiled(self) -> bool:
        return bool(self.compile_command)

    def effective_limits(self, overrides: Optional[LimitOverrides]) -> Limits:
        return self.limits.clamp(overrides, self.max_limits or self.limits)

    def render(self, template: str, workdir: str) -> str:
        return template.format(source=self.source_file, workdir=workdir)


@dataclass(frozen=True)
class TestCase:
    stdin: str = ""
    expected_output: Optional[str] = None
    name: Optional[str] = None

    __test__ = False  # keep pytest from collecting this class


@dataclass(frozen=True)
class Submission:
    language: str
    source: Optional[str] = None
    files: Tuple[SourceFile, ...] = ()
    stdin: str = ""
    limits: Optional[LimitOverrides] = None
    expected_output: Optional[str] = None

    def __post_init__(self):
        if self.source is None and not self.files:
            raise ValueError("submission has no source and no files")

    def materialize(self, profile: LanguageProfile) -> Tuple[SourceFile, ...]:
        files = tuple(self.files)
        if self.source is not None:
            files = files + (SourceFile(profile.source_file, self.source),)
        return files

    def as_testcase(self) -> TestCase:
        return TestCase(stdin=self.stdin, expected_output=self.expected_output)


@dataclass(frozen=True)
class SandboxHandle:
    sandbox_id: str
    image: str
    workdir: str
    ref: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class ExecSpec:
    phase: Phase
    command: str
    limits: Limits
    stdin: bytes = b""
    env: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ExecutionOutcome:
    phase: Phase
    exit_code: Optional[int]
    signal: Optional[int] = None
    wall_seconds: float = 0.0
    cpu_seconds: float = 0.0
    peak_memory_bytes: int = 0
    stdout: str = ""
    stderr: str = ""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    timed_out: bool = False
    cpu_exceeded: bool = False
    memory_exceeded: bool = False

    @property
    def output_exceeded(self) -> bool:
        return self.stdout_truncated or self.stderr_truncated

    @property
    def limit_exceeded(self) -> bool:
        return self.timed_out or self.cpu_exceeded or self.memory_exceeded or self.output_exceeded

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.signal is None and not self.limit_exceeded

    def to_dict(self) -> dict:
        d = asdict(self)
        d["phase"] = self.phase.value
        return d


@dataclass(frozen=True)
class JudgeResult:
    verdict: Verdict
    state: RunState
    phase: Optional[Phase] = None
    stdout: str = ""
    stderr: str = ""
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    wall_seconds: float = 0.0
    cpu_seconds: float = 0.0
    peak_memory_bytes: int = 0
    compile_outcome: Optional[ExecutionOutcome] = None
    run_outcome: Optional[ExecutionOutcome] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    run_id: Optional[str] = None
    cases: Tuple["JudgeResult", ...] = ()
    passed: int = 0
    total: int = 0

    @property
    def accepted(self) -> bool:
        return self.verdict is Verdict.ACCEPTED

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "verdict": self.verdict.value,
            "short": self.verdict.short_name(),
            "state": self.state.value,
            "phase": self.phase.value if self.phase else None,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "stdout_truncated": self.stdout_truncated,
            "stderr_truncated": self.stderr_truncated,
            "wall_seconds": round(self.wall_seconds, 4),
            "cpu_seconds": round(self.cpu_seconds, 4),
            "peak_memory_bytes": self.peak_memory_bytes,
            "error": self.error,
            "error_kind": self.error_kind,
            "passed": self.passed,
            "total": self.total,
            "cases": [c.to_dict() for c in self.cases],
        }
