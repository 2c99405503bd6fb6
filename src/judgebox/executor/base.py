from __future__ import annotations

import abc
import threading
from typing import Dict, List, Optional, Sequence

import structlog

from ..core.cancel import CancelToken
from ..core.models import ExecSpec, ExecutionOutcome, SandboxHandle, SourceFile

log = structlog.get_logger(__name__)


class IsolationBackend(abc.ABC):
    """Capability interface over an isolation runtime.

    Implementations own the mechanics (containers, process groups, cgroups);
    the orchestrator only ever sees handles and outcomes.
    """

    name = "abstract"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._live: Dict[str, SandboxHandle] = {}

    # ------------ lifecycle ------------

    @abc.abstractmethod
    def provision(self, image: str, *, run_id: str) -> SandboxHandle: ...

    @abc.abstractmethod
    def write_files(self, handle: SandboxHandle, files: Sequence[SourceFile]) -> None: ...

    @abc.abstractmethod
    def exec(self, handle: SandboxHandle, spec: ExecSpec,
             cancel: Optional[CancelToken] = None) -> ExecutionOutcome: ...

    def destroy(self, handle: SandboxHandle) -> None:
        """Tear the sandbox down. Calling it again for the same handle is a no-op."""
        with self._lock:
            if self._live.pop(handle.sandbox_id, None) is None:
                return
        try:
            self._teardown(handle)
        except Exception:
            # teardown failed: keep tracking it so close() can retry
            with self._lock:
                self._live[handle.sandbox_id] = handle
            raise

    @abc.abstractmethod
    def _teardown(self, handle: SandboxHandle) -> None: ...

    def probe(self) -> dict:
        return {"backend": self.name}

    # ------------ bookkeeping ------------

    def _register(self, handle: SandboxHandle) -> SandboxHandle:
        with self._lock:
            self._live[handle.sandbox_id] = handle
        return handle

    def live_sandboxes(self) -> List[str]:
        with self._lock:
            return list(self._live)

    def close(self) -> None:
        """Destroy every sandbox that is still live."""
        with self._lock:
            handles = list(self._live.values())
        for handle in handles:
            try:
                self.destroy(handle)
            except Exception as e:
                log.error("sandbox_destroy_failed", sandbox_id=handle.sandbox_id, error=str(e))
