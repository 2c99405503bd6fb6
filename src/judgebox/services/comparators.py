"""Expected-output comparators: ``(actual, expected) -> bool``."""
from __future__ import annotations

import json
from typing import Callable, Dict, List

Comparator = Callable[[str, str], bool]


def _lines(text: str) -> List[str]:
    lines = [line.rstrip() for line in text.replace("\r\n", "\n").split("\n")]
    while lines and not lines[-1]:
        lines.pop()
    return lines


def exact(actual: str, expected: str) -> bool:
    return actual == expected


def trimmed(actual: str, expected: str) -> bool:
    """Ignore trailing whitespace on each line and trailing blank lines."""
    return _lines(actual) == _lines(expected)


def tokens(actual: str, expected: str) -> bool:
    return actual.split() == expected.split()


_MISSING = object()


def _load(text: str):
    try:
        return json.loads(text)
    except ValueError:
        return _MISSING


def json_equal(actual: str, expected: str) -> bool:
    a, e = _load(actual), _load(expected)
    if a is _MISSING or e is _MISSING:
        return False
    return a == e


def default(actual: str, expected: str) -> bool:
    """Structural comparison when both sides parse as JSON, trimmed text comparison otherwise."""
    a, e = _load(actual), _load(expected)
    if a is not _MISSING and e is not _MISSING:
        return a == e
    return trimmed(actual, expected)


COMPARATORS: Dict[str, Comparator] = {
    "exact": exact,
    "trimmed": trimmed,
    "tokens": tokens,
    "json": json_equal,
    "default": default,
}


def get_comparator(name: str) -> Comparator:
    try:
        return COMPARATORS[name]
    except KeyError:
        raise ValueError(f"unknown comparator {name!r}; expected one of {', '.join(sorted(COMPARATORS))}") from None
