from __future__ import annotations

import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Protocol, Sequence

import structlog

from ..core.cancel import CancelToken
from ..core.utils import cpu_rlimit_seconds
from .capture import BoundedCapture

log = structlog.get_logger(__name__)

# stop waiting for output threads this long after the child is gone
_DRAIN_GRACE_S = 2.0


class ResourceSampler(Protocol):
    """Watches a running process tree; the supervisor kills it once an ``*_exceeded`` flag is set."""

    memory_exceeded: bool
    cpu_exceeded: bool
    peak_rss: int
    cpu_seconds: float

    def start(self, pid: int) -> None: ...

    def stop(self) -> None: ...


@dataclass
class ProcessReport:
    exit_code: Optional[int]
    signal: Optional[int]
    wall_seconds: float
    cpu_seconds: float
    peak_rss_bytes: int
    stdout: bytes
    stderr: bytes
    stdout_truncated: bool = False
    stderr_truncated: bool = False
    timed_out: bool = False
    cpu_exceeded: bool = False
    memory_exceeded: bool = False
    cancelled: bool = False


def split_exit_status(status: int, *, shell: bool = True):
    """
    (exit_code, signal) from a raw wait status.

    Under a shell, or through ``docker exec``, a child killed by a signal
    shows up as exit status 128+N; that is mapped back to the signal.
    """
    if os.WIFSIGNALED(status):
        return None, os.WTERMSIG(status)
    code = os.WEXITSTATUS(status)
    if shell and 128 < code < 128 + signal.NSIG:
        return None, code - 128
    return code, None


def cpu_limit_tripped(cpu_seconds: float, sig: Optional[int], limit: float) -> bool:
    """
    Whether a phase went over its CPU limit.

    A SIGXCPU only counts once the whole-second RLIMIT_CPU was really used up:
    a plain ``exit 152`` reads as SIGXCPU after the 128+N mapping.
    """
    if cpu_seconds > limit:
        return True
    return sig == signal.SIGXCPU and cpu_seconds >= cpu_rlimit_seconds(limit)


def kill_process_group(pid: int) -> None:
    try:
        os.killpg(pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass


def _feed_stdin(stream, data: bytes) -> None:
    try:
        if data:
            stream.write(data)
            stream.flush()
    except (BrokenPipeError, OSError):
        # child exited or closed stdin without reading everything
        pass
    finally:
        try:
            stream.close()
        except OSError:
            pass


def run_supervised(
    argv: Sequence[str],
    *,
    wall_seconds: float,
    output_bytes: int,
    stdin: bytes = b"",
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    preexec_fn: Optional[Callable[[], None]] = None,
    kill: Optional[Callable[[int], None]] = None,
    sampler: Optional[ResourceSampler] = None,
    cancel: Optional[CancelToken] = None,
    on_start: Optional[Callable[[int], None]] = None,
    poll_interval: float = 0.02,
    shell_status: bool = True,
) -> ProcessReport:
    """
    Run ``argv`` to completion or until a limit trips; never blocks past the wall deadline.

    The child gets its own session so the default ``kill`` takes out the whole
    process group. Stdout/stderr are captured up to ``output_bytes`` each; an
    overflow kills the child. Wall deadline, cancellation and sampler-reported
    excess also kill it, with the matching flag set on the report.
    """
    kill = kill or kill_process_group

    def _preexec():
        os.setsid()
        if preexec_fn is not None:
            preexec_fn()

    start = time.monotonic()
    p = subprocess.Popen(
        list(argv),
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        cwd=cwd,
        env=dict(env) if env is not None else None,
        preexec_fn=_preexec,
        close_fds=True,
    )
    if on_start is not None:
        try:
            on_start(p.pid)
        except BaseException:
            kill(p.pid)
            p.wait()
            raise

    out = BoundedCapture(p.stdout, output_bytes, name=f"stdout-{p.pid}")
    err = BoundedCapture(p.stderr, output_bytes, name=f"stderr-{p.pid}")
    feeder = threading.Thread(target=_feed_stdin, args=(p.stdin, stdin), name=f"stdin-{p.pid}", daemon=True)
    out.start()
    err.start()
    feeder.start()
    if sampler is not None:
        sampler.start(p.pid)

    deadline = start + wall_seconds
    timed_out = cancelled = killed = False
    status = 0
    rusage = None
    try:
        while True:
            pid, status, rusage = os.wait4(p.pid, os.WNOHANG)
            if pid:
                break
            if not killed:
                reason = None
                if time.monotonic() >= deadline:
                    timed_out, reason = True, "wall"
                elif cancel is not None and cancel.cancelled:
                    cancelled, reason = True, "cancelled"
                elif out.overflow.is_set() or err.overflow.is_set():
                    reason = "output"
                elif sampler is not None and (sampler.memory_exceeded or sampler.cpu_exceeded):
                    reason = "memory" if sampler.memory_exceeded else "cpu"
                if reason:
                    log.debug("process_killed", pid=p.pid, reason=reason)
                    kill(p.pid)
                    killed = True
            time.sleep(poll_interval)
    finally:
        if sampler is not None:
            sampler.stop()
    wall = time.monotonic() - start
    p.returncode = os.waitstatus_to_exitcode(status)

    out.join(_DRAIN_GRACE_S)
    err.join(_DRAIN_GRACE_S)
    if out.is_alive() or err.is_alive():
        # grandchildren still hold the pipes open; a group kill releases them
        kill(p.pid)
        out.join(_DRAIN_GRACE_S)
        err.join(_DRAIN_GRACE_S)
    feeder.join(_DRAIN_GRACE_S)

    exit_code, sig = split_exit_status(status, shell=shell_status)
    cpu = (rusage.ru_utime + rusage.ru_stime) if rusage is not None else 0.0
    peak = int(rusage.ru_maxrss) * 1024 if rusage is not None else 0
    if sampler is not None:
        # orphaned grandchildren never show up in the rusage of the reaped shell
        peak = max(peak, sampler.peak_rss)
        cpu = max(cpu, sampler.cpu_seconds)
    return ProcessReport(
        exit_code=exit_code,
        signal=sig,
        wall_seconds=wall,
        cpu_seconds=cpu,
        peak_rss_bytes=peak,
        stdout=out.value(),
        stderr=err.value(),
        stdout_truncated=out.truncated,
        stderr_truncated=err.truncated,
        timed_out=timed_out,
        cpu_exceeded=bool(sampler and sampler.cpu_exceeded),
        memory_exceeded=bool(sampler and sampler.memory_exceeded),
        cancelled=cancelled,
    )
