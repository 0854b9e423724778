from __future__ import annotations

import argparse
import json
import signal
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from .infra.config import load_plan_input, plan_input_schema, resolve_plan_input_path
from .infra.context import PipelineContext
from .infra.errors import ConfigurationError, ConflictError, NotFoundError
from .infra.factory import build_context, describe_context
from .infra.models import Plan, to_jsonable
from .orchestration.plan_builder import build_plan
from .orchestration.runner import PipelineRunner
from .orchestration.step_sequencer import sequence_steps
from .utils.fs import atomic_write_text

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_CONFLICT = 3
EXIT_CANCELLED = 130


def _emit(payload: Any, output: Optional[str]) -> None:
    text = json.dumps(payload, indent=2, sort_keys=True)
    if output:
        atomic_write_text(Path(output).resolve(), text + "\n")
        print(f"[cli] wrote {output}")
    else:
        print(text)


def _load_plan(args: argparse.Namespace, context: PipelineContext) -> Plan:
    path = resolve_plan_input_path(Path.cwd(), args.plan)
    if not path.exists():
        raise NotFoundError(f"plan input not found: {path}")
    plan_input = load_plan_input(path)
    return build_plan(plan_input.spec, plan_input.segments, context)


def cmd_plan(args: argparse.Namespace) -> int:
    context = build_context(verbose=args.verbose)
    plan = _load_plan(args, context)
    payload: Dict[str, Any] = {"plan": plan.to_dict()}
    if args.verbose:
        payload["context"] = describe_context(context)
    _emit(payload, args.output)
    return EXIT_OK


def cmd_steps(args: argparse.Namespace) -> int:
    context = build_context(verbose=args.verbose)
    plan = _load_plan(args, context)
    steps: List[Dict[str, Any]] = [{"key": s.key, "kind": s.kind, "title": s.title} for s in sequence_steps(plan)]
    _emit({"run_key": plan.run_key, "steps": steps}, args.output)
    return EXIT_OK


def cmd_run(args: argparse.Namespace) -> int:
    cancel = threading.Event()

    def _on_signal(signum: int, frame: Any) -> None:
        print(f"[cli][WARN] signal {signum} received; cancelling after the current step")
        cancel.set()

    previous = signal.signal(signal.SIGINT, _on_signal)
    try:
        context = build_context(cancel_event=cancel, verbose=args.verbose)
        plan = _load_plan(args, context)
        result = PipelineRunner(context).run(plan)
    finally:
        signal.signal(signal.SIGINT, previous)

    _emit(result.to_dict(), args.output)
    if result.status == "SUCCEEDED":
        return EXIT_OK
    if result.status == "CANCELLED":
        return EXIT_CANCELLED
    if result.error_type == ConflictError.__name__:
        return EXIT_CONFLICT
    return EXIT_FAILED


def cmd_schema(args: argparse.Namespace) -> int:
    _emit(plan_input_schema(), args.output)
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="modforge", description="Build, sign, package, publish and install script modules")
    sub = p.add_subparsers(dest="cmd", required=True)

    def _common(sp: argparse.ArgumentParser) -> None:
        sp.add_argument("--plan", default=None, help="Plan input file (default: $MODFORGE_PLAN or ./modforge.yml)")
        sp.add_argument("--output", default=None, help="Write the JSON result to this file instead of stdout")
        sp.add_argument("--verbose", action="store_true", default=None)

    sp = sub.add_parser("plan", help="Resolve the plan input into a plan")
    _common(sp)
    sp.set_defaults(func=cmd_plan)

    sp = sub.add_parser("steps", help="List the steps a run would execute")
    _common(sp)
    sp.set_defaults(func=cmd_steps)

    sp = sub.add_parser("run", help="Run the pipeline")
    _common(sp)
    sp.set_defaults(func=cmd_run)

    sp = sub.add_parser("schema", help="Print the plan input JSON schema")
    sp.add_argument("--output", default=None)
    sp.set_defaults(func=cmd_schema)

    return p


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return int(args.func(args) or 0)
    except ConfigurationError as e:
        print(f"[cli][FAILED] configuration error: {e}")
        return EXIT_CONFIG
    except NotFoundError as e:
        print(f"[cli][FAILED] {e}")
        return EXIT_CONFIG


if __name__ == "__main__":
    raise SystemExit(main())
