from __future__ import annotations

import resource
from typing import Optional

from ..core.utils import cpu_rlimit_seconds


def apply_rlimits(cpu_seconds: float, nofile: int, fsize_bytes: Optional[int] = None,
                  address_space_bytes: Optional[int] = None) -> None:
    """
    Process-level limits applied in the child before exec: CPU time, core
    dumps, file descriptors, file size and (optionally) address space.

    RLIMIT_CPU gets one second of slack on the hard limit so the soft limit
    delivers SIGXCPU before the kernel falls back to SIGKILL. The CPU limit is
    mandatory; the others are skipped if the host refuses them.
    """
    cpu = cpu_rlimit_seconds(cpu_seconds)
    resource.setrlimit(resource.RLIMIT_CPU, (cpu, cpu + 1))
    _lower(resource.RLIMIT_CORE, 0)
    _lower(resource.RLIMIT_NOFILE, nofile)
    if fsize_bytes:
        _lower(resource.RLIMIT_FSIZE, fsize_bytes)
    if address_space_bytes:
        _lower(resource.RLIMIT_AS, address_space_bytes)


def _lower(which: int, value: int) -> None:
    # an unprivileged process may only lower its hard limit
    _, hard = resource.getrlimit(which)
    if hard != resource.RLIM_INFINITY:
        value = min(value, hard)
    try:
        resource.setrlimit(which, (value, value))
    except (ValueError, OSError):
        pass
