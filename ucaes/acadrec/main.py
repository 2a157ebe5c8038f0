"""
AcadRec - Operator command line.

This module wires every engine component to one document store and exposes
them as subcommands:
- allocate: Issue the next identifier for a period key
- resolve: Find a student's record in one or more collections
- grades: Create, submit, approve, reject, publish and inspect grade batches
- progression: Plan or execute end-of-year level progression
- reconcile-registrations: Align registration numbers with application ids

Usage:
    acadrec allocate UCAES2025
    acadrec resolve --registration-number UCAES20250001 --collection students
    acadrec grades approve <batch-id> --actor director-01
    acadrec progression execute --schedule-type Regular --actor registrar

Configuration is entirely via environment variables.
See config.py for all available settings.

Invariants:
    - Results are printed to stdout as JSON, logs go to stderr
    - Domain errors exit with status 1 and a JSON error body
    - Progression defaults to a dry run unless `execute` is used

How to change safely:
    - Add new subcommands, don't change existing output keys
    - Keep exit codes stable, operators script against them
"""

from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import logging
import sys
from collections.abc import Sequence
from typing import Any

import json_log_formatter

from .config import EngineConfig
from .errors import AcadRecError
from .grades import GradeWorkflow, StudentGradeRecord
from .identity import (
    CandidateKey,
    Collections,
    EntityResolver,
    IdentifierAllocator,
    by_precedence,
    document_id,
    email,
    index_number,
    registration,
)
from .progression import ProgressionEngine, StudentFilter
from .store import DocumentStore
from .sync import CrossCollectionSynchronizer, reconcile_registration_numbers

logger = logging.getLogger(__name__)

DEFAULT_RESOLVE_COLLECTIONS = (
    Collections.STUDENTS,
    Collections.STUDENT_REGISTRATIONS,
    Collections.ADMISSION_APPLICATIONS,
)


def setup_logging(config: EngineConfig) -> None:
    """Configure logging based on configuration.

    Args:
        config: Engine configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


class Engine:
    """All engine components bound to one document store.

    Example:
        >>> engine = Engine(EngineConfig.from_env())
        >>> await engine.start()
        >>> await engine.allocator.allocate("UCAES2025")
        'UCAES20250001'
    """

    def __init__(self, config: EngineConfig) -> None:
        self.config = config
        self.store = DocumentStore.from_config(config.storage)
        self.allocator = IdentifierAllocator(self.store, config.allocator)
        self.resolver = EntityResolver(self.store)
        self.synchronizer = CrossCollectionSynchronizer(
            self.store, self.resolver, config.workflow
        )
        self.workflow = GradeWorkflow(self.store, config.workflow)
        self.progression = ProgressionEngine(self.store, config.progression, config.workflow)

    async def start(self) -> None:
        await self.store.initialize()
        logger.info(f"AcadRec engine ready on {self.store.db_path}")


def _load_grades(path: str) -> list[dict[str, Any]]:
    with open(path) as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("grades", [])
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a list of grade entries")
    return data


def _candidate_keys(args: argparse.Namespace) -> list[CandidateKey]:
    keys = []
    if args.document_id:
        keys.append(document_id(args.document_id))
    if args.registration_number:
        keys.append(registration(args.registration_number))
    if args.index_number:
        keys.append(index_number(args.index_number))
    if args.email:
        keys.append(email(args.email))
    keys.extend(CandidateKey.parse(text) for text in args.key or [])
    return by_precedence(keys)


async def _run_command(engine: Engine, args: argparse.Namespace) -> Any:
    if args.command == "allocate":
        if args.peek:
            return {
                "period_key": args.period_key,
                "last_number": await engine.allocator.peek(args.period_key),
            }
        return {"identifier": await engine.allocator.allocate(args.period_key)}

    if args.command == "resolve":
        collections = args.collection or list(DEFAULT_RESOLVE_COLLECTIONS)
        resolutions = await engine.resolver.locate(collections, _candidate_keys(args))
        return {name: resolution.to_dict() for name, resolution in resolutions.items()}

    if args.command == "grades":
        return await _run_grades(engine, args)

    if args.command == "progression":
        student_filter = StudentFilter(
            schedule_type=args.schedule_type,
            collections=tuple(args.collection or [Collections.STUDENT_REGISTRATIONS]),
        )
        dry_run = args.progression_command == "plan" or args.dry_run
        result = await engine.progression.run(student_filter, dry_run=dry_run, actor=args.actor)
        return result.to_dict()

    if args.command == "reconcile-registrations":
        summary = await reconcile_registration_numbers(
            engine.store, engine.synchronizer, actor=args.actor
        )
        return summary.to_dict()

    raise ValueError(f"Unknown command: {args.command}")


async def _run_grades(engine: Engine, args: argparse.Namespace) -> Any:
    workflow = engine.workflow
    action = args.grades_command

    if action == "create":
        batch = await workflow.create_batch(
            args.lecturer,
            args.course,
            args.period,
            _load_grades(args.file),
            course_name=args.course_name,
        )
        return {"batch_id": batch.batch_id, "status": batch.status.value}

    if action == "submit":
        state = await workflow.submit(args.batch_id, args.actor)
    elif action == "approve":
        state = await workflow.approve(args.batch_id, args.actor)
    elif action == "reject":
        state = await workflow.reject(args.batch_id, args.actor, args.reason)
    elif action == "publish":
        state = await workflow.publish(args.batch_id, args.actor)
    elif action == "resubmit":
        grades = _load_grades(args.file) if args.file else None
        state = await workflow.resubmit(args.batch_id, args.actor, grades)
    elif action == "state":
        state = await workflow.get_state(args.batch_id)
    elif action == "published":
        records = await workflow.published_grades(args.student)
        return [
            {
                **StudentGradeRecord.from_document(record).to_dict(),
                "course_ref": record.get("courseRef"),
            }
            for record in records
        ]
    else:
        raise ValueError(f"Unknown grades command: {action}")

    return state.to_dict()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="acadrec", description="Academic record consistency and workflow engine"
    )
    parser.add_argument("--data-dir", help="Override ACADREC_DATA_DIR")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # allocate command
    allocate_parser = subparsers.add_parser("allocate", help="Allocate the next identifier")
    allocate_parser.add_argument("period_key", help="Counter scope, e.g. UCAES2025")
    allocate_parser.add_argument(
        "--peek", action="store_true", help="Show the last issued number instead"
    )

    # resolve command
    resolve_parser = subparsers.add_parser("resolve", help="Resolve a student to records")
    resolve_parser.add_argument(
        "--collection", action="append", help="Collection to search (repeatable)"
    )
    resolve_parser.add_argument("--document-id")
    resolve_parser.add_argument("--registration-number")
    resolve_parser.add_argument("--index-number")
    resolve_parser.add_argument("--email")
    resolve_parser.add_argument(
        "--key", action="append", help="Extra key as field=value (repeatable)"
    )

    # grades commands
    grades_parser = subparsers.add_parser("grades", help="Grade submission workflow")
    grades_sub = grades_parser.add_subparsers(dest="grades_command", required=True)

    create_parser = grades_sub.add_parser("create", help="Create a draft batch")
    create_parser.add_argument("--lecturer", required=True)
    create_parser.add_argument("--course", required=True)
    create_parser.add_argument("--course-name")
    create_parser.add_argument("--period", required=True, help="e.g. 2024/2025-S1")
    create_parser.add_argument("--file", required=True, help="JSON file with grade entries")

    for name, help_text in (
        ("submit", "Submit a draft batch for approval"),
        ("approve", "Approve a pending batch"),
        ("reject", "Reject a pending batch"),
        ("publish", "Publish an approved batch"),
        ("resubmit", "Replace a rejected batch and submit it"),
    ):
        action_parser = grades_sub.add_parser(name, help=help_text)
        action_parser.add_argument("batch_id")
        action_parser.add_argument("--actor", required=True)
        if name == "reject":
            action_parser.add_argument("--reason", required=True)
        if name == "resubmit":
            action_parser.add_argument("--file", help="Corrected grade entries")

    state_parser = grades_sub.add_parser("state", help="Show batch status and record counts")
    state_parser.add_argument("batch_id")

    published_parser = grades_sub.add_parser("published", help="Grades visible to a student")
    published_parser.add_argument("--student", required=True)

    # progression commands
    progression_parser = subparsers.add_parser("progression", help="Level progression")
    progression_sub = progression_parser.add_subparsers(
        dest="progression_command", required=True
    )
    for name, help_text in (
        ("plan", "Show what progression would do"),
        ("execute", "Progress students and advance the academic year"),
    ):
        action_parser = progression_sub.add_parser(name, help=help_text)
        action_parser.add_argument("--schedule-type", help="Regular, Weekend, ...")
        action_parser.add_argument(
            "--collection", action="append", help="Student collection (repeatable)"
        )
        action_parser.add_argument("--actor", default="system-progression")
        action_parser.add_argument("--dry-run", action="store_true")

    # reconcile-registrations command
    reconcile_parser = subparsers.add_parser(
        "reconcile-registrations",
        help="Align registration numbers with application ids",
    )
    reconcile_parser.add_argument("--actor", default="system:reconcile")

    return parser


def main(argv: Sequence[str] | None = None) -> None:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    # Load configuration
    try:
        config = EngineConfig.from_env()
        if args.data_dir:
            config = dataclasses.replace(
                config, storage=dataclasses.replace(config.storage, data_dir=args.data_dir)
            )
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config)
    config.log_config()

    async def run() -> Any:
        engine = Engine(config)
        await engine.start()
        return await _run_command(engine, args)

    try:
        result = asyncio.run(run())
    except AcadRecError as e:
        print(
            json.dumps({"error": e.message, "code": e.code, "details": e.details}, default=str)
        )
        sys.exit(1)
    except (OSError, ValueError) as e:
        print(json.dumps({"error": str(e), "code": "INVALID_INPUT"}))
        sys.exit(1)

    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
