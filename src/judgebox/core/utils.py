from __future__ import annotations

import math
import random
import re
import string
import time

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([kmgt]?)(i?b?)?\s*$", re.IGNORECASE)
_UNITS = {"": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3, "t": 1024 ** 4}

_EXTENSIONS = {
    ".cpp": "cpp", ".cc": "cpp", ".cxx": "cpp",
    ".c": "c",
    ".py": "python",
    ".js": "javascript",
    ".ts": "typescript",
    ".java": "java",
    ".go": "go",
    ".rs": "rust",
    ".rb": "ruby",
    ".php": "php",
}


def new_run_id() -> str:
    suf = "".join(random.choice(string.hexdigits.lower()) for _ in range(6))
    return f"{int(time.time())}-{suf}"


def infer_language(filename: str) -> str | None:
    name = filename.lower()
    for ext, lang in _EXTENSIONS.items():
        if name.endswith(ext):
            return lang
    return None


def parse_size(value: int | float | str) -> int:
    """Byte count from an int or a string such as ``256m``, ``512MiB`` or ``1g``.

    Binary multiples are used for every suffix.
    """
    if isinstance(value, bool):
        raise ValueError(f"invalid size: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"size must be >= 0: {value!r}")
        return int(value)
    m = _SIZE_RE.match(value)
    if not m:
        raise ValueError(f"invalid size: {value!r}")
    number, unit, _ = m.groups()
    return int(float(number) * _UNITS[unit.lower()])


def cpu_rlimit_seconds(cpu_seconds: float) -> int:
    # RLIMIT_CPU has whole-second granularity
    return max(1, math.ceil(cpu_seconds))
