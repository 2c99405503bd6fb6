from __future__ import annotations

import io
import subprocess
import tarfile
import time
from pathlib import PurePosixPath
from typing import Dict, Optional, Sequence

import structlog

from ..core.cancel import CancelToken
from ..core.errors import BackendError, ProvisionError
from ..core.models import ExecSpec, ExecutionOutcome, SandboxHandle, SourceFile
from ..core.utils import cpu_rlimit_seconds
from ..settings import DockerSettings
from .base import IsolationBackend
from .cgroups import parse_flat_keyed
from .process import cpu_limit_tripped, kill_process_group, run_supervised

log = structlog.get_logger(__name__)

_KEEPALIVE = ["tail", "-f", "/dev/null"]
_STAT_FILES = ("cpu.stat", "memory.events", "memory.peak", "memory.current")
# one marker line per file so a missing file does not shift the others
_STAT_SCRIPT = "for f in {files}; do echo \"== $f\"; cat /sys/fs/cgroup/$f 2>/dev/null; done".format(
    files=" ".join(_STAT_FILES))


def parse_cgroup_stats(text: str) -> Dict[str, Dict[str, int]]:
    """
    Parse the output of the stats script into ``{file: {key: value}}``.

    Single-value files (``memory.peak``, ``memory.current``) are stored under ``value``.
    """
    sections: Dict[str, list] = {}
    current = None
    for line in text.splitlines():
        if line.startswith("== "):
            current = line[3:].strip()
            sections[current] = []
        elif current is not None:
            sections[current].append(line)
    out: Dict[str, Dict[str, int]] = {}
    for name, lines in sections.items():
        body = "\n".join(lines).strip()
        if not body:
            continue
        if body.isdigit():
            out[name] = {"value": int(body)}
        else:
            out[name] = parse_flat_keyed(body)
    return out


class DockerBackend(IsolationBackend):
    """
    One long-lived container per orchestration run, driven through the docker CLI.

    The container idles on a keep-alive command; each phase is a ``docker exec``
    supervised from the host so the wall deadline never depends on the
    container's cooperation. Resource figures come from the container's own
    cgroup v2 files.
    """

    name = "docker"

    def __init__(self, settings: Optional[DockerSettings] = None):
        super().__init__()
        self.settings = settings or DockerSettings()

    # ------------ docker CLI ------------

    def _docker(self, *args: str, input: Optional[bytes] = None, check: bool = True,
                timeout: Optional[float] = None) -> subprocess.CompletedProcess:
        cmd = [self.settings.binary, *args]
        try:
            proc = subprocess.run(
                cmd,
                input=input,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=timeout or self.settings.command_timeout_s,
            )
        except FileNotFoundError as e:
            raise BackendError(f"docker binary not found: {self.settings.binary}", command=cmd) from e
        except subprocess.TimeoutExpired as e:
            raise BackendError(f"docker {args[0]} timed out", command=cmd) from e
        if check and proc.returncode != 0:
            raise BackendError(f"docker {args[0]} failed with exit code {proc.returncode}",
                               command=cmd, stderr=proc.stderr.decode("utf-8", errors="replace"))
        return proc

    # ------------ lifecycle ------------

    def provision(self, image: str, *, run_id: str) -> SandboxHandle:
        s = self.settings
        name = f"{s.name_prefix}{run_id}"
        args = [
            "create",
            "--name", name,
            "--label", f"judgebox.run_id={run_id}",
            "--network", s.network,
            "--cap-drop", "ALL",
            "--security-opt", "no-new-privileges",
            "--user", s.user,
            "--workdir", s.workdir,
            "--cpus", str(s.cpus),
            "--tmpfs", f"/tmp:rw,nosuid,nodev,size={s.tmpfs_size}",
            image,
            *_KEEPALIVE,
        ]
        try:
            cid = self._docker(*args).stdout.decode().strip()
        except BackendError as e:
            raise ProvisionError(f"cannot create sandbox from image {image}", command=e.command,
                                 stderr=e.stderr) from e
        try:
            self._docker("start", cid)
        except BackendError as e:
            self._docker("rm", "-f", cid, check=False)
            raise ProvisionError(f"cannot start sandbox from image {image}", command=e.command,
                                 stderr=e.stderr) from e
        handle = SandboxHandle(sandbox_id=name, image=image, workdir=s.workdir, ref=cid)
        return self._register(handle)

    def write_files(self, handle: SandboxHandle, files: Sequence[SourceFile]) -> None:
        self._docker("cp", "-a", "-", f"{handle.ref}:{handle.workdir}", input=self._archive(files))

    def _archive(self, files: Sequence[SourceFile]) -> bytes:
        uid, _, gid = self.settings.user.partition(":")
        buf = io.BytesIO()
        now = time.time()
        dirs = set()
        with tarfile.open(fileobj=buf, mode="w") as tar:
            for f in files:
                for parent in reversed(PurePosixPath(f.name).parents[:-1]):
                    if str(parent) in dirs:
                        continue
                    dirs.add(str(parent))
                    d = tarfile.TarInfo(str(parent))
                    d.type = tarfile.DIRTYPE
                    d.mode = 0o755
                    d.mtime = now
                    d.uid = int(uid)
                    d.gid = int(gid or uid)
                    tar.addfile(d)
                data = f.data()
                info = tarfile.TarInfo(f.name)
                info.size = len(data)
                info.mode = 0o644
                info.mtime = now
                info.uid = int(uid)
                info.gid = int(gid or uid)
                tar.addfile(info, io.BytesIO(data))
        return buf.getvalue()

    def exec(self, handle: SandboxHandle, spec: ExecSpec,
             cancel: Optional[CancelToken] = None) -> ExecutionOutcome:
        cid = handle.ref
        limits = spec.limits
        mem = str(limits.memory_bytes)
        # memory-swap equal to memory: no swap
        self._docker("update", "--memory", mem, "--memory-swap", mem,
                     "--pids-limit", str(limits.pids), cid)
        before = self.stats(cid)

        argv = [self.settings.binary, "exec", "-i", "-u", self.settings.user, "-w", handle.workdir]
        for k, v in spec.env.items():
            argv += ["-e", f"{k}={v}"]
        inner = f"ulimit -t {cpu_rlimit_seconds(limits.cpu_seconds)}; {spec.command}"
        argv += [cid, "sh", "-c", inner]

        try:
            report = run_supervised(
                argv,
                wall_seconds=limits.wall_seconds,
                output_bytes=limits.output_bytes,
                stdin=spec.stdin,
                kill=lambda pid: self._kill(cid, pid),
                cancel=cancel,
            )
        except OSError as e:
            raise BackendError(f"cannot start docker exec: {e}", command=argv) from e

        after = self.stats(cid)
        cpu = (_usage_usec(after) - _usage_usec(before)) / 1e6
        oom = _oom_kills(after) > _oom_kills(before)
        peak = after.get("memory.peak", after.get("memory.current", {})).get("value", 0)
        return ExecutionOutcome(
            phase=spec.phase,
            exit_code=report.exit_code,
            signal=report.signal,
            wall_seconds=report.wall_seconds,
            cpu_seconds=max(cpu, 0.0),
            peak_memory_bytes=peak,
            stdout=report.stdout.decode("utf-8", errors="replace"),
            stderr=report.stderr.decode("utf-8", errors="replace"),
            stdout_truncated=report.stdout_truncated,
            stderr_truncated=report.stderr_truncated,
            timed_out=report.timed_out,
            cpu_exceeded=cpu_limit_tripped(cpu, report.signal, limits.cpu_seconds),
            memory_exceeded=oom,
        )

    def _kill(self, cid: str, pid: int) -> None:
        """Kill everything the executor user runs in the container, then the local exec client."""
        try:
            self._docker("exec", "-u", self.settings.user, cid, "kill", "-KILL", "-1")
        except BackendError as e:
            log.warning("sandbox_kill_fallback", container=cid, error=str(e))
            self._docker("kill", cid, check=False)
        finally:
            kill_process_group(pid)

    def stats(self, cid: str) -> Dict[str, Dict[str, int]]:
        # empty when the container was force-stopped by the kill fallback
        proc = self._docker("exec", cid, "sh", "-c", _STAT_SCRIPT, check=False)
        if proc.returncode != 0:
            return {}
        return parse_cgroup_stats(proc.stdout.decode("utf-8", errors="replace"))

    def _teardown(self, handle: SandboxHandle) -> None:
        proc = self._docker("rm", "-f", handle.ref, check=False)
        if proc.returncode != 0:
            stderr = proc.stderr.decode("utf-8", errors="replace")
            if "No such container" in stderr:
                return
            raise BackendError(f"cannot remove sandbox {handle.sandbox_id}",
                               command=["rm", "-f", handle.ref], stderr=stderr)

    def probe(self) -> dict:
        info = super().probe()
        try:
            version = self._docker("version", "--format", "{{.Server.Version}}")
        except BackendError as e:
            info.update(available=False, error=str(e))
            return info
        images = self._docker("images", "--format", "{{.Repository}}:{{.Tag}}")
        info.update(
            available=True,
            server_version=version.stdout.decode().strip(),
            images=sorted(i for i in images.stdout.decode().split() if "judge" in i),
        )
        return info


def _usage_usec(stats: Dict[str, Dict[str, int]]) -> int:
    return stats.get("cpu.stat", {}).get("usage_usec", 0)


def _oom_kills(stats: Dict[str, Dict[str, int]]) -> int:
    return stats.get("memory.events", {}).get("oom_kill", 0)
