from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional, Sequence

import structlog

from ..core.cancel import CancelToken
from ..core.models import JudgeResult, Submission, TestCase
from ..executor.factory import create_backend
from ..settings import Settings
from .comparators import get_comparator
from .orchestrator import ExecutionOrchestrator
from .registry import LanguageRegistry

log = structlog.get_logger(__name__)


@dataclass(eq=False)
class JudgeTicket:
    future: "Future[JudgeResult]"
    token: CancelToken

    def cancel(self, reason: str = "cancelled by caller") -> None:
        # a queued run never starts; a running one is killed and torn down
        self.future.cancel()
        self.token.cancel(reason)

    def result(self, timeout: Optional[float] = None) -> JudgeResult:
        return self.future.result(timeout)

    def done(self) -> bool:
        return self.future.done()


class JudgeService:
    """Bounded worker pool in front of one orchestrator."""

    def __init__(self, orchestrator: ExecutionOrchestrator, max_workers: int = 4):
        self.orchestrator = orchestrator
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="judge")
        self._lock = threading.Lock()
        self._tickets: set[JudgeTicket] = set()
        self._closed = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "JudgeService":
        registry = LanguageRegistry.from_settings(settings)
        backend = create_backend(settings)
        orchestrator = ExecutionOrchestrator(registry, backend, get_comparator(settings.comparator))
        return cls(orchestrator, max_workers=settings.max_workers)

    def submit(self, submission: Submission, testcases: Optional[Sequence[TestCase]] = None) -> JudgeTicket:
        with self._lock:
            if self._closed:
                raise RuntimeError("judge service is shut down")
            token = CancelToken()
            if testcases:
                fut = self._pool.submit(self.orchestrator.run_testcases, submission, list(testcases), cancel=token)
            else:
                fut = self._pool.submit(self.orchestrator.run, submission, cancel=token)
            ticket = JudgeTicket(fut, token)
            self._tickets.add(ticket)
        fut.add_done_callback(lambda _f: self._forget(ticket))
        return ticket

    def _forget(self, ticket: JudgeTicket) -> None:
        with self._lock:
            self._tickets.discard(ticket)

    def shutdown(self, wait: bool = True) -> None:
        """Cancel outstanding runs, wait for them to tear down, then destroy anything left."""
        with self._lock:
            self._closed = True
            pending = list(self._tickets)
        for ticket in pending:
            ticket.cancel("judge service shutting down")
        self._pool.shutdown(wait=wait, cancel_futures=True)
        self.orchestrator.backend.close()
        log.info("judge_service_stopped", cancelled=len(pending))

    def __enter__(self) -> "JudgeService":
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()
