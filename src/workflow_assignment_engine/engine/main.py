"""CLI entrypoint for the workflow engine."""

from __future__ import annotations

import argparse
import json
import logging
import sys
import threading
from pathlib import Path

from pydantic import BaseModel, ValidationError

from workflow_assignment_engine import __version__

from .config import EngineSettings
from .errors import (
    AssignmentClosed,
    CloneFailure,
    ConcurrencyConflict,
    NotFound,
    PreconditionNotMet,
    TemplateValidationError,
)
from .logging import configure_logging
from .scheduling.models import RecurringSchedule
from .service import WorkflowService
from .templates.models import WorkflowTemplate
from .workflow.events import CompletionEvidence

logger = logging.getLogger(__name__)


def parse_context_value(raw: str) -> bool | int | float | str:
    lowered = raw.strip().lower()
    if lowered in {"true", "false"}:
        return lowered == "true"
    for cast in (int, float):
        try:
            return cast(raw)
        except ValueError:
            continue
    return raw


def _parse_context(pairs: list[str] | None) -> dict[str, bool | int | float | str]:
    out: dict[str, bool | int | float | str] = {}
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Expected key=value, got {pair!r}")
        out[key.strip()] = parse_context_value(value)
    return out


def _print_model(model: BaseModel) -> None:
    print(model.model_dump_json(indent=2))


def _read_json(path: Path) -> object:
    return json.loads(path.read_text(encoding="utf-8"))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="workflow-engine",
        description="Workflow template instantiation and auto-progression engine",
    )
    parser.add_argument(
        "--version", action="version", version=f"workflow-assignment-engine {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    save_template = subparsers.add_parser("save-template", help="Save a template draft")
    save_template.add_argument("--file", type=Path, required=True, help="Template JSON file")

    publish = subparsers.add_parser("publish-template", help="Validate and publish a draft")
    publish.add_argument("template_id")

    instantiate = subparsers.add_parser("instantiate", help="Create an assignment")
    instantiate.add_argument("--template", dest="template_id", required=True)
    instantiate.add_argument("--client", dest="client_id", required=True)
    instantiate.add_argument(
        "--template-version", type=int, default=None, help="Defaults to the latest version"
    )
    instantiate.add_argument("--name", default=None)
    instantiate.add_argument(
        "--context", action="append", metavar="KEY=VALUE", help="Assignment context field"
    )
    instantiate.add_argument("--dedup-key", default=None)

    start = subparsers.add_parser("start", help="Start work on a task")
    start.add_argument("node_id")
    start.add_argument("--actor", default="cli")

    complete = subparsers.add_parser("complete", help="Report completion evidence for a node")
    complete.add_argument("node_id")
    complete.add_argument("--actor", default="cli")
    complete.add_argument("--check", action="append", default=[], help="Checklist item id")
    complete.add_argument("--subtask", action="append", default=[], help="Subtask id")
    complete.add_argument(
        "--context", action="append", metavar="KEY=VALUE", help="Context update"
    )
    complete.add_argument(
        "--evidence-only",
        action="store_true",
        help="Record the evidence and let auto-progression decide instead of forcing completion",
    )

    skip = subparsers.add_parser("skip", help="Skip a node and its open descendants")
    skip.add_argument("node_id")
    skip.add_argument("--actor", default="cli")

    cancel = subparsers.add_parser("cancel", help="Cancel a node and its open descendants")
    cancel.add_argument("node_id")
    cancel.add_argument("--actor", default="cli")

    cancel_assignment = subparsers.add_parser("cancel-assignment", help="Cancel an assignment")
    cancel_assignment.add_argument("assignment_id")

    snapshot = subparsers.add_parser("snapshot", help="Print an assignment snapshot")
    snapshot.add_argument("assignment_id")

    upsert_schedule = subparsers.add_parser("upsert-schedule", help="Create or replace a schedule")
    upsert_schedule.add_argument("--file", type=Path, required=True, help="Schedule JSON file")

    cancel_schedule = subparsers.add_parser("cancel-schedule", help="Deactivate a schedule")
    cancel_schedule.add_argument("schedule_id")

    subparsers.add_parser("scheduler-tick", help="Run one scheduler poll cycle")

    run_scheduler = subparsers.add_parser("run-scheduler", help="Poll schedules until interrupted")
    run_scheduler.add_argument(
        "--poll-seconds",
        type=float,
        default=None,
        help="Override SCHEDULER_POLL_INTERVAL_SECONDS",
    )

    return parser


def _run(args: argparse.Namespace, settings: EngineSettings, service: WorkflowService) -> int:
    if args.command == "save-template":
        draft = service.save_template_draft(WorkflowTemplate.model_validate(_read_json(args.file)))
        print(f"Saved draft {draft.id}")
        return 0

    if args.command == "publish-template":
        version = service.publish_template(args.template_id)
        print(f"Published {args.template_id} v{version}")
        return 0

    if args.command == "instantiate":
        overrides: dict[str, object] = {"context": _parse_context(args.context)}
        if args.name:
            overrides["name"] = args.name
        assignment_id = service.instantiate_assignment(
            args.template_id,
            args.client_id,
            overrides,
            template_version=args.template_version,
            dedup_key=args.dedup_key,
        )
        print(assignment_id)
        return 0

    if args.command == "start":
        _print_model(service.start_node(args.node_id, actor=args.actor))
        return 0

    if args.command == "complete":
        evidence = CompletionEvidence(
            actor=args.actor,
            explicit=not args.evidence_only,
            checked_items=tuple(args.check),
            completed_subtasks=tuple(args.subtask),
            context_updates=_parse_context(args.context),
        )
        _print_model(service.report_completion(args.node_id, evidence))
        return 0

    if args.command == "skip":
        _print_model(service.skip_node(args.node_id, actor=args.actor))
        return 0

    if args.command == "cancel":
        _print_model(service.cancel_node(args.node_id, actor=args.actor))
        return 0

    if args.command == "cancel-assignment":
        _print_model(service.cancel_assignment(args.assignment_id))
        return 0

    if args.command == "snapshot":
        _print_model(service.get_assignment_snapshot(args.assignment_id))
        return 0

    if args.command == "upsert-schedule":
        schedule = service.upsert_recurring_schedule(
            RecurringSchedule.model_validate(_read_json(args.file))
        )
        _print_model(schedule)
        return 0

    if args.command == "cancel-schedule":
        _print_model(service.cancel_recurring_schedule(args.schedule_id))
        return 0

    if args.command == "scheduler-tick":
        report = service.scheduler_tick()
        if not report.leader:
            print("Another instance holds the scheduler lease; nothing to do")
            return 0
        for run in report.runs:
            status = run.error or f"assignment {run.assignment_id}"
            print(f"{run.schedule_id} due {run.due_at.isoformat()}: {status}")
        for missed in report.missed:
            print(str(missed))
        print(f"Followups processed: {report.followups_processed}")
        return 0

    if args.command == "run-scheduler":
        stop = threading.Event()
        poll = args.poll_seconds or settings.scheduler_poll_interval_seconds
        try:
            service.scheduler.run_forever(poll_interval_seconds=poll, stop=stop)
        except KeyboardInterrupt:
            stop.set()
        return 0

    logger.error("Unknown command", extra={"command": args.command})
    return 2


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = EngineSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return 2

    configure_logging(settings.log_level, settings.log_format)
    service = WorkflowService.from_settings(settings)

    try:
        return _run(args, settings, service)

    except (ValidationError, TemplateValidationError, CloneFailure, ValueError) as e:
        print(str(e), file=sys.stderr)
        return 2

    except (NotFound, AssignmentClosed) as e:
        print(str(e), file=sys.stderr)
        return 2

    except PreconditionNotMet as e:
        logger.info(str(e), extra={"node_id": e.node_id, "blockers": e.blockers})
        print(str(e), file=sys.stderr)
        return 3

    except ConcurrencyConflict as e:
        print(f"{e} (re-read and retry)", file=sys.stderr)
        return 4

    except Exception:
        logger.exception("Command failed")
        return 1

    finally:
        service.close()


if __name__ == "__main__":
    raise SystemExit(main())
