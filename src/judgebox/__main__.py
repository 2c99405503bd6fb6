"""judgebox: compile and run a submission in a sandbox and print the verdict as JSON."""
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

from .core.errors import ConfigError, JudgeError
from .core.models import LimitOverrides, Submission
from .core.utils import infer_language, parse_size
from .executor.factory import create_backend
from .logging import setup_logging
from .services.comparators import get_comparator
from .services.orchestrator import ExecutionOrchestrator
from .services.registry import LanguageRegistry
from .settings import load_settings


def _read(path: str | None) -> str | None:
    if path is None:
        return None
    if path == "-":
        return sys.stdin.read()
    return Path(path).read_text(encoding="utf-8")


def _overrides(args) -> LimitOverrides | None:
    ov = LimitOverrides(
        cpu_seconds=args.cpu,
        wall_seconds=args.wall,
        memory_bytes=parse_size(args.memory) if args.memory else None,
        output_bytes=parse_size(args.output) if args.output else None,
    )
    if ov == LimitOverrides():
        return None
    return ov


def _emit(data) -> None:
    sys.stdout.write(json.dumps(data, indent=2) + "\n")


def cli(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="judgebox", description=__doc__)
    parser.add_argument("--conf", type=Path, default=None, help="settings YAML (default: $SBX_CONF or conf/judgebox.yaml)")
    parser.add_argument("--backend", choices=("docker", "local"), default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    run = sub.add_parser("run", help="judge one source file")
    run.add_argument("file", help="source file")
    run.add_argument("--lang", default=None, help="language id (default: inferred from the file extension)")
    run.add_argument("--stdin", default=None, help="file fed to the program's stdin ('-' for our stdin)")
    run.add_argument("--expected", default=None, help="file holding the expected output")
    run.add_argument("--comparator", default=None)
    run.add_argument("--cpu", type=float, default=None, help="CPU-time limit in seconds")
    run.add_argument("--wall", type=float, default=None, help="wall-clock limit in seconds")
    run.add_argument("--memory", default=None, help="memory limit, e.g. 256m")
    run.add_argument("--output", default=None, help="per-stream output cap, e.g. 64k")

    sub.add_parser("languages", help="list configured languages")
    sub.add_parser("probe", help="report backend availability")

    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.conf)
        if args.backend:
            settings = settings.model_copy(update={"backend": args.backend})
        setup_logging(settings.log_level, settings.log_json)
        registry = LanguageRegistry.from_settings(settings)
    except ConfigError as e:
        print(f"judgebox: {e}", file=sys.stderr)
        return 2

    if args.cmd == "languages":
        _emit([
            {"id": p.id, "image": p.image, "compiled": p.compiled, "aliases": list(p.aliases)}
            for p in registry.profiles()
        ])
        return 0

    backend = create_backend(settings)
    if args.cmd == "probe":
        _emit(backend.probe())
        return 0

    lang = args.lang or infer_language(args.file)
    if lang is None:
        parser.error(f"cannot infer the language of {args.file}; pass --lang")
    try:
        comparator = get_comparator(args.comparator or settings.comparator)
        submission = Submission(
            language=lang,
            source=_read(args.file),
            stdin=_read(args.stdin) or "",
            expected_output=_read(args.expected),
            limits=_overrides(args),
        )
    except (OSError, ValueError) as e:
        print(f"judgebox: {e}", file=sys.stderr)
        return 2

    orchestrator = ExecutionOrchestrator(registry, backend, comparator)
    try:
        result = orchestrator.run(submission)
    except JudgeError as e:
        print(f"judgebox: {e}", file=sys.stderr)
        return 2
    finally:
        backend.close()

    _emit(result.to_dict())
    if result.verdict.is_system_fault:
        return 2
    return 0 if result.accepted else 1


def main(argv: list[str] | None = None) -> None:
    sys.exit(cli(argv))


if __name__ == "__main__":  # pragma: no cover - CLI entry
    main()
