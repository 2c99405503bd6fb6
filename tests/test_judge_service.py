import threading

import pytest

from conftest import FakeBackend, outcome
from judgebox.core.errors import JudgeCancelled
from judgebox.core.models import Submission, TestCase, Verdict
from judgebox.services.judge_service import JudgeService
from judgebox.services.orchestrator import ExecutionOrchestrator
from judgebox.settings import Settings


def service(registry, backend, workers=2):
    return JudgeService(ExecutionOrchestrator(registry, backend), max_workers=workers)


def test_submit_single_run(registry):
    backend = FakeBackend(run=[outcome(stdout="3\n")])
    with service(registry, backend) as svc:
        ticket = svc.submit(Submission("py", "print(3)", expected_output="3"))
        assert ticket.result(timeout=10).verdict is Verdict.ACCEPTED
    assert backend.closed


def test_submit_with_testcases(registry):
    backend = FakeBackend(run=[outcome(stdout="1"), outcome(stdout="2")])
    with service(registry, backend) as svc:
        res = svc.submit(Submission("py", "x"), [TestCase("", "1"), TestCase("", "2")]).result(timeout=10)
    assert res.passed == 2 and res.total == 2


def test_cancel_running_submission(registry):
    started = threading.Event()

    def blocking(spec, cancel):
        started.set()
        cancel.wait(10)
        return outcome(exit_code=None, signal=9)

    backend = FakeBackend(run=[blocking])
    svc = service(registry, backend)
    ticket = svc.submit(Submission("py", "x"))
    assert started.wait(10)
    ticket.cancel()
    with pytest.raises(JudgeCancelled):
        ticket.result(timeout=10)
    assert len(backend.destroy_calls) == 1
    svc.shutdown()


def test_shutdown_cancels_outstanding_and_rejects_new(registry):
    started = threading.Event()

    def blocking(spec, cancel):
        started.set()
        cancel.wait(10)
        return outcome(exit_code=None, signal=9)

    backend = FakeBackend(run=[blocking])
    svc = service(registry, backend, workers=1)
    running = svc.submit(Submission("py", "x"))
    queued = svc.submit(Submission("py", "y"))
    assert started.wait(10)
    svc.shutdown()

    with pytest.raises(JudgeCancelled):
        running.result(timeout=10)
    assert queued.future.cancelled()
    assert backend.closed
    assert backend.live_sandboxes() == []
    with pytest.raises(RuntimeError):
        svc.submit(Submission("py", "z"))


def test_from_settings(tmp_path):
    settings = Settings(backend="local", jobs_dir=tmp_path, comparator="tokens", max_workers=1)
    svc = JudgeService.from_settings(settings)
    try:
        assert svc.orchestrator.backend.name == "local"
        assert "cpp" in svc.orchestrator.registry
    finally:
        svc.shutdown()
