from __future__ import annotations

from typing import Callable, Dict, List, Optional, Union

import pytest

from judgebox.core.cancel import CancelToken
from judgebox.core.errors import ProvisionError
from judgebox.core.models import ExecSpec, ExecutionOutcome, Phase, SandboxHandle, SourceFile
from judgebox.executor.base import IsolationBackend
from judgebox.services.registry import LanguageRegistry
from judgebox.settings import PACKAGED_LANGUAGES

Scripted = Union[ExecutionOutcome, BaseException, Callable[[ExecSpec, Optional[CancelToken]], ExecutionOutcome]]


def outcome(phase: Phase = Phase.RUN, exit_code: Optional[int] = 0, **kw) -> ExecutionOutcome:
    kw.setdefault("wall_seconds", 0.01)
    kw.setdefault("cpu_seconds", 0.01)
    return ExecutionOutcome(phase=phase, exit_code=exit_code, **kw)


class FakeBackend(IsolationBackend):
    """Scripted backend: each exec pops the next outcome queued for its phase."""

    name = "fake"

    def __init__(self, compile: Optional[List[Scripted]] = None, run: Optional[List[Scripted]] = None,
                 provision_error: Optional[Exception] = None, write_error: Optional[Exception] = None,
                 destroy_error: Optional[Exception] = None):
        super().__init__()
        self.script: Dict[Phase, List[Scripted]] = {Phase.COMPILE: list(compile or []), Phase.RUN: list(run or [])}
        self.provision_error = provision_error
        self.write_error = write_error
        self.destroy_error = destroy_error
        self.provisioned: List[str] = []
        self.written: List[SourceFile] = []
        self.execs: List[ExecSpec] = []
        self.destroy_calls: List[str] = []
        self.teardowns = 0
        self.closed = False

    def provision(self, image: str, *, run_id: str) -> SandboxHandle:
        if self.provision_error is not None:
            raise self.provision_error
        self.provisioned.append(image)
        return self._register(SandboxHandle(sandbox_id=f"fake-{run_id}", image=image, workdir="/sandbox"))

    def write_files(self, handle, files) -> None:
        if self.write_error is not None:
            raise self.write_error
        self.written.extend(files)

    def exec(self, handle, spec, cancel=None) -> ExecutionOutcome:
        self.execs.append(spec)
        queue = self.script[spec.phase]
        item = queue.pop(0) if queue else outcome(spec.phase)
        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(spec, cancel)
        return item

    def destroy(self, handle) -> None:
        self.destroy_calls.append(handle.sandbox_id)
        super().destroy(handle)

    def _teardown(self, handle) -> None:
        self.teardowns += 1
        if self.destroy_error is not None:
            raise self.destroy_error

    def close(self) -> None:
        self.closed = True
        super().close()

    def phases(self) -> List[Phase]:
        return [s.phase for s in self.execs]


TEST_LANGUAGES = {
    "defaults": {
        "limits": {"cpu_seconds": 2, "wall_seconds": 4, "memory": "128MiB", "output": "64KiB", "pids": 32},
        "compile_limits": {"cpu_seconds": 1, "wall_seconds": 2, "memory": "256MiB", "output": "16KiB"},
        "max_limits": {"cpu_seconds": 5, "wall_seconds": 10, "memory": "512MiB", "output": "1MiB"},
    },
    "languages": {
        "cpp": {
            "image": "judge-cpp:test",
            "source_file": "solution.cpp",
            "compile": "g++ -o program {source}",
            "run": "./program",
            "aliases": ["c++"],
        },
        "python": {
            "image": "judge-python:test",
            "source_file": "solution.py",
            "run": "python3 {source}",
            "aliases": ["py"],
        },
    },
}


@pytest.fixture
def registry() -> LanguageRegistry:
    return LanguageRegistry.from_mapping(TEST_LANGUAGES, source="tests")


@pytest.fixture(scope="session")
def packaged_registry() -> LanguageRegistry:
    return LanguageRegistry.from_file(PACKAGED_LANGUAGES)


@pytest.fixture
def provision_failure() -> ProvisionError:
    return ProvisionError("cannot create sandbox from image judge-cpp:test", stderr="Unable to find image")
