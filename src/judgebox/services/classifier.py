from __future__ import annotations

from typing import Optional

from ..core.models import ExecutionOutcome, Phase, Verdict
from .comparators import Comparator, default


def limit_verdict(outcome: ExecutionOutcome) -> Optional[Verdict]:
    """The limit an outcome tripped, most severe first; None if it stayed within all of them."""
    if outcome.memory_exceeded:
        return Verdict.MEMORY_LIMIT_EXCEEDED
    if outcome.timed_out or outcome.cpu_exceeded:
        return Verdict.TIME_LIMIT_EXCEEDED
    if outcome.output_exceeded:
        return Verdict.OUTPUT_LIMIT_EXCEEDED
    return None


def classify(outcome: ExecutionOutcome, *, expected: Optional[str] = None,
             comparator: Optional[Comparator] = None) -> Verdict:
    """
    Map a raw phase outcome to a verdict.

    A compile phase is either Accepted (go on to run) or CompileError. For the
    run phase a tripped limit always wins over the exit status, so a process
    killed for memory that also exited non-zero is MemoryLimitExceeded.
    """
    if outcome.phase is Phase.COMPILE:
        return Verdict.ACCEPTED if outcome.succeeded else Verdict.COMPILE_ERROR

    tripped = limit_verdict(outcome)
    if tripped is not None:
        return tripped
    if outcome.signal is not None or outcome.exit_code != 0:
        return Verdict.RUNTIME_ERROR
    if expected is None:
        return Verdict.ACCEPTED
    compare = comparator or default
    return Verdict.ACCEPTED if compare(outcome.stdout, expected) else Verdict.WRONG_ANSWER
