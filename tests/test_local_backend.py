import shlex
import signal
import sys
import time

import psutil
import pytest

from judgebox.core.errors import ProvisionError
from judgebox.core.models import ExecSpec, Limits, Phase, SourceFile, Verdict
from judgebox.executor.local import LocalBackend, TreeSampler
from judgebox.services.classifier import classify
from judgebox.settings import LocalSettings

PY = shlex.quote(sys.executable)


def limits(**kw):
    base = dict(cpu_seconds=5, wall_seconds=10, memory_bytes=512 << 20, output_bytes=1 << 16)
    base.update(kw)
    return Limits(**base)


@pytest.fixture
def backend(tmp_path):
    b = LocalBackend(tmp_path / "jobs", LocalSettings(poll_interval_s=0.01))
    yield b
    b.close()


@pytest.fixture
def handle(backend):
    return backend.provision("judge-python:test", run_id="run1")


def run(backend, handle, command, phase=Phase.RUN, stdin=b"", **kw):
    return backend.exec(handle, ExecSpec(phase=phase, command=command, limits=limits(**kw), stdin=stdin))


def test_provision_creates_private_workdir(backend, handle, tmp_path):
    assert handle.workdir == str(tmp_path / "jobs" / "run1" / "work")
    assert (tmp_path / "jobs" / "run1" / "work").is_dir()
    assert backend.live_sandboxes() == ["run1"]


def test_provision_twice_with_same_id_fails(backend, handle):
    with pytest.raises(ProvisionError):
        backend.provision("judge-python:test", run_id="run1")


def test_write_and_run(backend, handle):
    backend.write_files(handle, [SourceFile("solution.py", "print(int(input()) + 1)"),
                                 SourceFile("pkg/data.txt", "x")])
    o = run(backend, handle, f"{PY} solution.py", stdin=b"41\n")
    assert o.exit_code == 0
    assert o.stdout == "42\n"
    assert o.succeeded
    assert o.wall_seconds > 0


def test_runtime_error_exit_code(backend, handle):
    o = run(backend, handle, "echo boom >&2; exit 7")
    assert o.exit_code == 7
    assert o.stderr == "boom\n"
    assert not o.limit_exceeded


def test_environment_is_minimal(backend, handle, monkeypatch):
    monkeypatch.setenv("SECRET_TOKEN", "leak")
    o = run(backend, handle, "echo ${SECRET_TOKEN:-none}")
    assert o.stdout == "none\n"


def test_cpu_limit_trips_busy_loop(backend, handle):
    o = run(backend, handle, "while :; do :; done", cpu_seconds=1, wall_seconds=10)
    assert o.cpu_exceeded or o.signal == signal.SIGXCPU
    assert not o.timed_out
    assert o.cpu_seconds >= 0.9


def test_wall_limit_trips_sleeper(backend, handle):
    o = run(backend, handle, "sleep 30", wall_seconds=0.5)
    assert o.timed_out
    assert o.limit_exceeded


def test_memory_limit_trips_hog(backend, handle):
    hog = f"{PY} -c \"import time; b = b'x' * (400 << 20); time.sleep(5)\""
    o = run(backend, handle, hog, memory_bytes=64 << 20, wall_seconds=15)
    assert o.memory_exceeded
    assert o.peak_memory_bytes > 64 << 20


def test_memory_spike_between_polls_is_still_caught(tmp_path):
    b = LocalBackend(tmp_path / "jobs", LocalSettings(poll_interval_s=0.5))
    try:
        h = b.provision("judge-python:test", run_id="coarse")
        o = run(b, h, f"{PY} -c \"b = b'x' * (300 << 20)\"", memory_bytes=64 << 20, wall_seconds=15)
    finally:
        b.close()
    assert o.peak_memory_bytes > 64 << 20
    assert o.memory_exceeded
    assert classify(o) is Verdict.MEMORY_LIMIT_EXCEEDED


def test_high_exit_status_is_not_a_cpu_kill(backend, handle):
    o = run(backend, handle, f"{PY} -c \"import sys; sys.exit(152)\"", cpu_seconds=2)
    assert o.signal == signal.SIGXCPU
    assert not o.cpu_exceeded
    assert classify(o) is Verdict.RUNTIME_ERROR


def test_orphans_are_killed_when_the_phase_ends(backend, handle):
    o = run(backend, handle, "sleep 30 >/dev/null 2>&1 & echo $!")
    orphan = int(o.stdout)
    assert handle.ref.sessions == []
    deadline = time.monotonic() + 5
    while time.monotonic() < deadline and not _gone(orphan):
        time.sleep(0.05)
    assert _gone(orphan)


def _gone(pid):
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


def test_output_cap(backend, handle):
    o = run(backend, handle, "yes", output_bytes=1000)
    assert o.stdout_truncated
    assert len(o.stdout) == 1000


def test_destroy_is_idempotent(backend, handle, tmp_path):
    backend.destroy(handle)
    assert not (tmp_path / "jobs" / "run1").exists()
    backend.destroy(handle)
    assert backend.live_sandboxes() == []


def test_close_destroys_everything(backend, tmp_path):
    backend.provision("x", run_id="a")
    backend.provision("x", run_id="b")
    backend.close()
    assert backend.live_sandboxes() == []
    assert list((tmp_path / "jobs").iterdir()) == []


def test_namespaced_argv(tmp_path):
    b = LocalBackend(tmp_path, LocalSettings(namespaces=True))
    argv = b._argv("./program")
    assert argv[0] == "unshare" and "--net" in argv
    assert argv[-3:] == ["/bin/sh", "-c", "./program"]


def test_probe(backend):
    info = backend.probe()
    assert info["backend"] == "local"
    assert "cgroup_v2" in info


def test_sampler_flags_are_sticky():
    s = TreeSampler(memory_limit=10, cpu_limit=100)
    s.peak_rss = 0

    class Proc:
        pid = 1

        def children(self, recursive=False):
            return []

        def memory_info(self):
            return type("M", (), {"rss": 20})()

        def cpu_times(self):
            return type("T", (), {"user": 0.5, "system": 0.1})()

    s.sample(Proc())
    assert s.memory_exceeded
    assert s.peak_rss == 20
    assert s.cpu_seconds == pytest.approx(0.6)
    assert not s.cpu_exceeded
