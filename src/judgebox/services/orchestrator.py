from __future__ import annotations

from dataclasses import replace
from typing import List, Optional, Sequence, Tuple

import structlog

from ..core.cancel import CancelToken
from ..core.errors import BackendError, JudgeCancelled
from ..core.models import (
    ExecSpec,
    ExecutionOutcome,
    JudgeResult,
    LanguageProfile,
    Limits,
    Phase,
    RunState,
    SandboxHandle,
    Submission,
    TestCase,
    Verdict,
)
from ..core.utils import new_run_id
from ..executor.base import IsolationBackend
from .classifier import classify
from .comparators import Comparator
from .registry import LanguageRegistry

log = structlog.get_logger(__name__)

# verdicts after which the remaining test cases are still worth running
_CONTINUE = (Verdict.ACCEPTED, Verdict.WRONG_ANSWER)


class ExecutionOrchestrator:
    """
    Drives one submission through provision → write → compile → run → classify → destroy.

    Submission-caused failures come back as verdicts. Backend failures come
    back as ``InternalError`` results carrying ``error_kind``. Only an unknown
    language (before anything is provisioned) and cancellation are raised.
    The sandbox is destroyed exactly once on every path out of a run.
    """

    def __init__(self, registry: LanguageRegistry, backend: IsolationBackend,
                 comparator: Optional[Comparator] = None):
        self.registry = registry
        self.backend = backend
        self.comparator = comparator

    def run(self, submission: Submission, *, cancel: Optional[CancelToken] = None,
            comparator: Optional[Comparator] = None) -> JudgeResult:
        return self._judge(submission, [submission.as_testcase()], cancel=cancel,
                           comparator=comparator, stop_on_failure=True, batch=False)

    def run_testcases(self, submission: Submission, testcases: Sequence[TestCase], *,
                      cancel: Optional[CancelToken] = None, comparator: Optional[Comparator] = None,
                      stop_on_failure: bool = True) -> JudgeResult:
        """Compile once and run every test case in the same sandbox."""
        if not testcases:
            raise ValueError("run_testcases needs at least one test case")
        return self._judge(submission, list(testcases), cancel=cancel, comparator=comparator,
                           stop_on_failure=stop_on_failure, batch=True)

    # ------------ state machine ------------

    def _judge(self, submission: Submission, testcases: List[TestCase], *, cancel: Optional[CancelToken],
               comparator: Optional[Comparator], stop_on_failure: bool, batch: bool) -> JudgeResult:
        profile = self.registry.resolve(submission.language)
        limits = profile.effective_limits(submission.limits)
        files = submission.materialize(profile)
        compare = comparator or self.comparator
        run_id = new_run_id()
        blog = log.bind(run_id=run_id, language=profile.id, image=profile.image)

        if cancel is not None:
            cancel.raise_if_cancelled()

        try:
            handle = self.backend.provision(profile.image, run_id=run_id)
        except BackendError as e:
            blog.error("backend_failure", step="provision", error_kind=type(e).__name__, error=str(e))
            return _internal_error(run_id, None, e)
        blog.info("sandbox_provisioned", sandbox_id=handle.sandbox_id)

        state = RunState.PROVISIONED
        phase: Optional[Phase] = None
        try:
            self.backend.write_files(handle, files)
            _check(cancel)

            compile_outcome = None
            if profile.compiled:
                phase = Phase.COMPILE
                compile_outcome = self._exec(handle, profile, phase, profile.compile_limits, b"", cancel, blog)
                _check(cancel)
                if classify(compile_outcome) is Verdict.COMPILE_ERROR:
                    result = _phase_result(run_id, Verdict.COMPILE_ERROR, compile_outcome,
                                           compile_outcome=compile_outcome)
                    if batch:
                        result = replace(result, total=len(testcases))
                    return self._finalize(result, blog)
                state = RunState.COMPILED

            phase = Phase.RUN
            cases: List[JudgeResult] = []
            for tc in testcases:
                _check(cancel)
                outcome = self._exec(handle, profile, phase, limits, tc.stdin.encode("utf-8"), cancel, blog)
                _check(cancel)
                verdict = classify(outcome, expected=tc.expected_output, comparator=compare)
                cases.append(_phase_result(run_id, verdict, outcome, compile_outcome=compile_outcome))
                if stop_on_failure and verdict not in _CONTINUE:
                    break
            state = RunState.RAN

            if batch:
                result = _aggregate(run_id, cases, len(testcases), compile_outcome)
            else:
                result = cases[0]
            return self._finalize(result, blog)
        except JudgeCancelled as e:
            blog.warning("judge_aborted", state=state.value, phase=phase.value if phase else None, reason=str(e))
            raise
        except BackendError as e:
            blog.error("backend_failure", step=phase.value if phase else "write_files",
                       error_kind=type(e).__name__, error=str(e), state=state.value)
            return _internal_error(run_id, phase, e)
        finally:
            self._destroy(handle, blog)

    def _exec(self, handle: SandboxHandle, profile: LanguageProfile, phase: Phase, limits: Limits,
              stdin: bytes, cancel: Optional[CancelToken], blog) -> ExecutionOutcome:
        template = profile.compile_command if phase is Phase.COMPILE else profile.run_command
        spec = ExecSpec(phase=phase, command=profile.render(template, handle.workdir), limits=limits, stdin=stdin)
        outcome = self.backend.exec(handle, spec, cancel)
        blog.info(
            "phase_finished",
            phase=phase.value,
            exit_code=outcome.exit_code,
            signal=outcome.signal,
            wall_s=round(outcome.wall_seconds, 3),
            cpu_s=round(outcome.cpu_seconds, 3),
            peak_memory=outcome.peak_memory_bytes,
            limit_exceeded=outcome.limit_exceeded,
        )
        return outcome

    def _finalize(self, result: JudgeResult, blog) -> JudgeResult:
        result = replace(result, state=RunState.FINALIZED)
        blog.info("verdict", verdict=result.verdict.value, phase=result.phase.value if result.phase else None,
                  passed=result.passed, total=result.total)
        return result

    def _destroy(self, handle: SandboxHandle, blog) -> None:
        try:
            self.backend.destroy(handle)
        except Exception as e:
            # never let a teardown failure mask the verdict
            blog.error("sandbox_destroy_failed", sandbox_id=handle.sandbox_id, error=str(e))


def _check(cancel: Optional[CancelToken]) -> None:
    if cancel is not None:
        cancel.raise_if_cancelled()


def _phase_result(run_id: str, verdict: Verdict, outcome: ExecutionOutcome, *,
                  compile_outcome: Optional[ExecutionOutcome]) -> JudgeResult:
    is_run = outcome.phase is Phase.RUN
    return JudgeResult(
        verdict=verdict,
        state=RunState.RAN if is_run else RunState.COMPILED,
        phase=outcome.phase,
        stdout=outcome.stdout,
        stderr=outcome.stderr,
        stdout_truncated=outcome.stdout_truncated,
        stderr_truncated=outcome.stderr_truncated,
        wall_seconds=outcome.wall_seconds,
        cpu_seconds=outcome.cpu_seconds,
        peak_memory_bytes=outcome.peak_memory_bytes,
        compile_outcome=compile_outcome,
        run_outcome=outcome if is_run else None,
        run_id=run_id,
        passed=int(verdict is Verdict.ACCEPTED) if is_run else 0,
        total=1 if is_run else 0,
    )


def _aggregate(run_id: str, cases: List[JudgeResult], total: int,
               compile_outcome: Optional[ExecutionOutcome]) -> JudgeResult:
    verdict = Verdict.worst(c.verdict for c in cases)
    # report the output of the case that decided the verdict
    decisive: Tuple[JudgeResult, ...] = tuple(c for c in cases if c.verdict is verdict)
    head = decisive[0]
    return replace(
        head,
        verdict=verdict,
        wall_seconds=sum(c.wall_seconds for c in cases),
        cpu_seconds=sum(c.cpu_seconds for c in cases),
        peak_memory_bytes=max(c.peak_memory_bytes for c in cases),
        compile_outcome=compile_outcome,
        cases=tuple(cases),
        passed=sum(1 for c in cases if c.accepted),
        total=total,
    )


def _internal_error(run_id: str, phase: Optional[Phase], error: BackendError) -> JudgeResult:
    return JudgeResult(
        verdict=Verdict.INTERNAL_ERROR,
        state=RunState.ABORTED,
        phase=phase,
        error=str(error),
        error_kind=type(error).__name__,
        run_id=run_id,
    )
