from __future__ import annotations

import shutil
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

import psutil
import structlog

from ..core.cancel import CancelToken
from ..core.errors import BackendError, ProvisionError
from ..core.models import ExecSpec, ExecutionOutcome, Limits, SandboxHandle, SourceFile
from ..settings import LocalSettings
from . import cgroups
from .base import IsolationBackend
from .process import ProcessReport, cpu_limit_tripped, kill_process_group, run_supervised
from .rlimits import apply_rlimits

log = structlog.get_logger(__name__)


class TreeSampler:
    """
    Polls RSS and CPU time of a process and all of its descendants.

    Flags are sticky: once the tree has been over a limit the supervisor
    kills it and the flag is reported on the outcome.
    """

    def __init__(self, memory_limit: int, cpu_limit: float, interval: float = 0.02):
        self.memory_limit = memory_limit
        self.cpu_limit = cpu_limit
        self.interval = interval
        self.peak_rss = 0
        self.cpu_seconds = 0.0
        self.memory_exceeded = False
        self.cpu_exceeded = False
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        # last cpu time seen per pid, so exited descendants still count
        self._cpu_seen: dict[int, float] = {}

    def start(self, pid: int) -> None:
        try:
            root = psutil.Process(pid)
        except psutil.NoSuchProcess:
            return
        self._thread = threading.Thread(target=self._loop, args=(root,), name=f"sampler-{pid}", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(1.0)

    def _loop(self, root: psutil.Process) -> None:
        while True:
            self.sample(root)
            if self._stop.wait(self.interval):
                return

    def sample(self, root: psutil.Process) -> None:
        try:
            procs = [root] + root.children(recursive=True)
        except psutil.Error:
            return
        rss = 0
        for proc in procs:
            try:
                rss += proc.memory_info().rss
                t = proc.cpu_times()
                self._cpu_seen[proc.pid] = t.user + t.system
            except psutil.Error:
                continue
        self.peak_rss = max(self.peak_rss, rss)
        self.cpu_seconds = max(self.cpu_seconds, sum(self._cpu_seen.values()))
        if rss > self.memory_limit:
            self.memory_exceeded = True
        if self.cpu_seconds > self.cpu_limit:
            self.cpu_exceeded = True


@dataclass
class _LocalSandbox:
    root: Path
    work: Path
    leaf: Optional[Path] = None
    # sessions of phases still in flight; teardown kills whatever is left
    sessions: list = field(default_factory=list)


class LocalBackend(IsolationBackend):
    """
    Runs phases as host processes in a private work directory.

    The image reference is only recorded: the host toolchain is used. Each
    command runs under ``/bin/sh -c`` in its own session with rlimits, a
    psutil sampler and (optionally) a cgroup v2 leaf and unshare namespaces.
    """

    name = "local"

    def __init__(self, jobs_dir: Path, settings: Optional[LocalSettings] = None):
        super().__init__()
        self.jobs_dir = Path(jobs_dir)
        self.settings = settings or LocalSettings()

    # ------------ lifecycle ------------

    def provision(self, image: str, *, run_id: str) -> SandboxHandle:
        root = self.jobs_dir / run_id
        work = root / "work"
        try:
            work.mkdir(parents=True, exist_ok=False)
        except FileExistsError as e:
            raise ProvisionError(f"sandbox directory already exists: {root}") from e
        except OSError as e:
            raise ProvisionError(f"cannot create sandbox directory {root}: {e}") from e

        box = _LocalSandbox(root=root, work=work)
        if self.settings.use_cgroup:
            try:
                box.leaf = cgroups.create_leaf(run_id, self.settings.cgroup_base)
            except ProvisionError:
                shutil.rmtree(root, ignore_errors=True)
                raise
        handle = SandboxHandle(sandbox_id=run_id, image=image, workdir=str(work), ref=box)
        return self._register(handle)

    def write_files(self, handle: SandboxHandle, files: Sequence[SourceFile]) -> None:
        box: _LocalSandbox = handle.ref
        for f in files:
            dest = box.work / f.name
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                dest.write_bytes(f.data())
            except OSError as e:
                raise BackendError(f"cannot write {f.name} into {box.work}: {e}") from e

    def exec(self, handle: SandboxHandle, spec: ExecSpec,
             cancel: Optional[CancelToken] = None) -> ExecutionOutcome:
        box: _LocalSandbox = handle.ref
        limits = spec.limits
        if box.leaf is not None:
            try:
                cgroups.set_limits(box.leaf, limits)
            except OSError as e:
                raise BackendError(f"cannot set cgroup limits on {box.leaf}: {e}") from e
            before = cgroups.read_metrics(box.leaf)
        else:
            before = {}

        env = {"PATH": self.settings.path, "HOME": str(box.work), "LANG": "C.UTF-8", "TMPDIR": str(box.work)}
        env.update(spec.env)
        sampler = TreeSampler(limits.memory_bytes, limits.cpu_seconds, self.settings.poll_interval_s)
        try:
            report = run_supervised(
                self._argv(spec.command),
                wall_seconds=limits.wall_seconds,
                output_bytes=limits.output_bytes,
                stdin=spec.stdin,
                cwd=str(box.work),
                env=env,
                preexec_fn=self._preexec(limits),
                sampler=sampler,
                cancel=cancel,
                on_start=lambda pid: self._started(box, pid),
                poll_interval=self.settings.poll_interval_s,
            )
        except OSError as e:
            raise BackendError(f"cannot start {spec.phase.value} command: {e}") from e
        finally:
            self._finished(box)

        oom = False
        if box.leaf is not None:
            after = cgroups.read_metrics(box.leaf)
            oom = cgroups.oom_kills(after) > cgroups.oom_kills(before)
        return _to_outcome(spec, report, oom)

    @staticmethod
    def _started(box: _LocalSandbox, pid: int) -> None:
        box.sessions.append(pid)
        if box.leaf is not None:
            cgroups.attach(box.leaf, pid)

    @staticmethod
    def _finished(box: _LocalSandbox) -> None:
        # the session leader is reaped by now; orphans left in its group go with it
        while box.sessions:
            kill_process_group(box.sessions.pop())

    def _argv(self, command: str) -> list[str]:
        argv = ["/bin/sh", "-c", command]
        if self.settings.namespaces:
            argv = ["unshare", "--user", "--map-root-user", "--net", "--pid", "--fork", "--kill-child", *argv]
        return argv

    def _preexec(self, limits: Limits):
        nofile = self.settings.nofile
        factor = self.settings.address_space_factor
        address_space = int(limits.memory_bytes * factor) if factor else None

        def _fn():
            apply_rlimits(limits.cpu_seconds, nofile, fsize_bytes=limits.memory_bytes,
                          address_space_bytes=address_space)

        return _fn

    def _teardown(self, handle: SandboxHandle) -> None:
        box: _LocalSandbox = handle.ref
        for sid in box.sessions:
            kill_process_group(sid)
        if box.leaf is not None:
            cgroups.kill_all(box.leaf)
            cgroups.teardown(box.leaf)
        if box.root.exists():
            shutil.rmtree(box.root)

    def probe(self) -> dict:
        info = super().probe()
        info["jobs_dir"] = str(self.jobs_dir)
        info["cgroup_v2"] = (cgroups.CGROOT / "cgroup.controllers").exists()
        info["unshare"] = shutil.which("unshare") is not None
        info["use_cgroup"] = self.settings.use_cgroup
        info["namespaces"] = self.settings.namespaces
        return info


def _to_outcome(spec: ExecSpec, report: ProcessReport, oom: bool) -> ExecutionOutcome:
    limits = spec.limits
    return ExecutionOutcome(
        phase=spec.phase,
        exit_code=report.exit_code,
        signal=report.signal,
        wall_seconds=report.wall_seconds,
        cpu_seconds=report.cpu_seconds,
        peak_memory_bytes=report.peak_rss_bytes,
        stdout=report.stdout.decode("utf-8", errors="replace"),
        stderr=report.stderr.decode("utf-8", errors="replace"),
        stdout_truncated=report.stdout_truncated,
        stderr_truncated=report.stderr_truncated,
        timed_out=report.timed_out,
        cpu_exceeded=report.cpu_exceeded or cpu_limit_tripped(report.cpu_seconds, report.signal, limits.cpu_seconds),
        # a spike between two sampler polls still shows up in ru_maxrss
        memory_exceeded=report.memory_exceeded or oom or report.peak_rss_bytes > limits.memory_bytes,
    )
