from __future__ import annotations

import time
from pathlib import Path
from typing import Dict, Optional

from ..core.errors import ProvisionError
from ..core.models import Limits

CGROOT = Path("/sys/fs/cgroup")


def _write_then_check(p: Path, val: str | int):
    val = str(val)
    p.write_text(val)
    back = p.read_text().strip()
    if back != val:
        raise ProvisionError(f"cgroup write {p}={val!r} but read back {back!r}")


def ensure_v2():
    if not (CGROOT / "cgroup.controllers").exists():
        raise ProvisionError("cgroup v2 is required for cgroup isolation")


def _self_cgroup_base() -> Path:
    # unified v2: '0::/<relative>'
    rel = ""
    with open("/proc/self/cgroup") as f:
        for line in f:
            if line.startswith("0::/"):
                rel = line.split("::", 1)[1].strip()
                break
    return (CGROOT / rel.lstrip("/")).resolve()


def get_base(configured: Optional[Path] = None) -> Path:
    if configured:
        base = Path(configured)
        if not str(base).startswith(str(CGROOT)):
            raise ProvisionError(f"cgroup base must live under {CGROOT}, got {base}")
        return base
    return _self_cgroup_base() / "judgebox"


def _enable_controllers(node: Path):
    """Enable memory/pids/cpu for children of ``node`` (node must hold no processes)."""
    cnt_file = node / "cgroup.controllers"
    if not cnt_file.exists():
        return
    have = set(cnt_file.read_text().split())
    want = [f"+{c}" for c in ("memory", "pids", "cpu") if c in have]
    if not want:
        return
    if (node / "cgroup.procs").read_text().strip():
        raise ProvisionError(f"{node} has processes; cannot set subtree_control")
    (node / "cgroup.subtree_control").write_text(" ".join(want))


def create_leaf(run_id: str, base: Optional[Path] = None) -> Path:
    ensure_v2()
    root = get_base(base)
    try:
        root.mkdir(parents=True, exist_ok=True)
        _enable_controllers(root)
        leaf = root / run_id
        leaf.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ProvisionError(f"cannot create cgroup leaf under {root}: {e}") from e
    return leaf


def set_limits(leaf: Path, limits: Limits):
    """Memory (no swap), pids and a single CPU's worth of quota."""
    _write_then_check(leaf / "memory.max", limits.memory_bytes)
    try:
        _write_then_check(leaf / "memory.swap.max", 0)
    except FileNotFoundError:
        # swap accounting disabled on this host
        pass
    _write_then_check(leaf / "pids.max", limits.pids)
    (leaf / "cpu.max").write_text("100000 100000")


def attach(leaf: Path, pid: int):
    (leaf / "cgroup.procs").write_text(str(pid))


def parse_flat_keyed(text: str) -> Dict[str, int]:
    out: Dict[str, int] = {}
    for line in text.splitlines():
        parts = line.split()
        if len(parts) == 2 and parts[1].isdigit():
            out[parts[0]] = int(parts[1])
    return out


def read_metrics(leaf: Path) -> dict:
    out: dict[str, str] = {}
    for name in ("memory.current", "memory.peak", "memory.events", "cpu.stat", "pids.current"):
        p = leaf / name
        if p.exists():
            out[name] = p.read_text().strip()
    return out


def oom_kills(metrics: dict) -> int:
    return parse_flat_keyed(metrics.get("memory.events", "")).get("oom_kill", 0)


def kill_all(leaf: Path):
    kill = leaf / "cgroup.kill"
    if kill.exists():
        kill.write_text("1")


def teardown(leaf: Path):
    # the leaf must be empty; give the kernel a moment to reap
    for _ in range(5):
        try:
            leaf.rmdir()
            return
        except FileNotFoundError:
            return
        except OSError:
            time.sleep(0.1)
    leaf.rmdir()
