"""Entry-point for the ``sentinelkit`` console script."""

from __future__ import annotations

import argparse
import asyncio
import importlib
import logging
import sys
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine

from .backends.sql import SQLStore
from .client import TornApiClient, is_valid_api_key
from .contracts import JobSchedule
from .errors import TransportError
from .ratelimit import PRUNE_RETENTION_S, RateLimiter, rate_limit_pruning_job
from .scheduler import JobDefinition, JobScheduler
from .settings import LOG_LEVELS, Settings

UTC = timezone.utc


class CLIError(RuntimeError):
    """Raised when the CLI fails to start or a command cannot complete."""


def _positive_float(name: str) -> Callable[[str], float]:
    def _validate(value: str) -> float:
        try:
            converted = float(value)
        except ValueError as exc:  # pragma: no cover - argparse already reports
            raise argparse.ArgumentTypeError(f"{name} must be a number") from exc
        if converted <= 0:
            raise argparse.ArgumentTypeError(f"{name} must be greater than 0")
        return converted

    return _validate


def _configure_logging(level_name: str) -> None:
    numeric = logging.getLevelName(level_name.upper())
    if not isinstance(numeric, int):  # pragma: no cover - guarded by argparse choices
        raise CLIError(f"Unknown log level: {level_name}")
    logging.basicConfig(level=numeric, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")


def _load_jobs(dotted_path: str) -> list[JobDefinition]:
    module_name, sep, attr = dotted_path.rpartition(":")
    if not module_name or not sep:
        raise CLIError("Job path must be in 'module:attr' format")
    try:
        module = importlib.import_module(module_name)
    except ModuleNotFoundError as exc:
        raise CLIError(f"Cannot import job module '{module_name}': {exc}") from exc
    try:
        factory = getattr(module, attr)
    except AttributeError as exc:
        raise CLIError(f"Module '{module_name}' has no attribute '{attr}'") from exc
    try:
        produced = factory()
    except Exception as exc:
        raise CLIError(f"Job factory '{dotted_path}' raised: {exc}") from exc
    jobs = [produced] if isinstance(produced, JobDefinition) else list(produced)
    for job in jobs:
        if not isinstance(job, JobDefinition):
            raise CLIError(f"Job factory '{dotted_path}' returned {type(job).__name__}, not JobDefinition")
    return jobs


def _format_time(value: datetime | None) -> str:
    return value.isoformat(timespec="seconds") if value else "-"


def _format_row(row: JobSchedule) -> str:
    line = (
        f"{row.job_name}  enabled={'yes' if row.enabled else 'no'}  "
        f"status={row.status or 'idle'}  attempts={row.attempts}  "
        f"next_run={_format_time(row.next_run_at)}  backoff_until={_format_time(row.backoff_until)}"
    )
    if row.force_run:
        line += "  (triggered)"
    if row.error_message:
        line += f"  error={row.error_message}"
    return line


async def _trigger(store: SQLStore, args: argparse.Namespace) -> None:
    if not await store.trigger(args.job):
        raise CLIError(f"Unknown job '{args.job}'")
    print(f"Triggered {args.job}; it will run on the next poll tick")


async def _status(store: SQLStore, args: argparse.Namespace) -> None:
    if args.job:
        row = await store.get_job(args.job)
        if row is None:
            raise CLIError(f"Unknown job '{args.job}'")
        rows = [row]
    else:
        rows = await store.list_jobs()
    if not rows:
        print("No jobs registered")
    for row in rows:
        print(_format_row(row))


async def _set_enabled(store: SQLStore, args: argparse.Namespace) -> None:
    enabled = args.command == "enable"
    if not await store.set_enabled(args.job, enabled):
        raise CLIError(f"Unknown job '{args.job}'")
    print(f"{'Enabled' if enabled else 'Disabled'} {args.job}")


async def _prune(store: SQLStore, args: argparse.Namespace) -> None:
    cutoff = datetime.now(UTC) - timedelta(seconds=args.retention)
    removed = await store.purge_before(cutoff)
    print(f"Removed {removed} rate-limit records older than {_format_time(cutoff)}")


async def _check_key(store: SQLStore, args: argparse.Namespace) -> None:
    if not is_valid_api_key(args.api_key):
        raise CLIError("API keys are exactly 16 alphanumeric characters")
    try:
        limiter = RateLimiter.from_settings(store, args.settings)
    except ValueError as exc:
        raise CLIError(str(exc)) from exc
    try:
        async with TornApiClient.from_settings(args.settings, rate_limiter=limiter) as client:
            result = await client.get("/key/info", api_key=args.api_key)
    except TransportError as exc:
        raise CLIError(f"Key check failed: {exc}") from exc
    finally:
        await limiter.aclose()
    if not result.ok:
        raise CLIError(f"Key rejected: {result.error}")  # type: ignore[union-attr]
    used = await limiter.get_request_count(args.api_key)
    print(
        f"Key accepted; {used}/{limiter.max_requests} requests used "
        f"in the last {limiter.window_s:g}s"
    )


async def _run_scheduler(store: SQLStore, args: argparse.Namespace) -> None:
    jobs: list[JobDefinition] = []
    for dotted_path in args.job:
        jobs.extend(_load_jobs(dotted_path))
    if args.with_pruning:
        jobs.append(rate_limit_pruning_job(store))
    try:
        scheduler = JobScheduler(
            store,
            jobs,
            poll_interval=args.poll_interval,
            log_sink=store,
            stale_claim_after=args.stale_claim_after,
        )
    except ValueError as exc:
        raise CLIError(str(exc)) from exc
    try:
        await scheduler.run()
    except asyncio.CancelledError:
        scheduler.request_stop()
        await scheduler.wait_stopped()
        raise
    except Exception as exc:
        raise CLIError(f"Scheduler terminated with an unexpected error: {exc}") from exc


async def _dispatch(args: argparse.Namespace) -> None:
    _configure_logging(args.log_level)
    if not args.dsn:
        raise CLIError("A database URL is required (--dsn or SENTINEL_DATABASE_URL)")
    try:
        engine = create_async_engine(args.dsn)
    except SQLAlchemyError as exc:
        raise CLIError(f"Failed to create engine for DSN {args.dsn!r}: {exc}") from exc

    try:
        store = SQLStore(engine)
        try:
            await args.handler(store, args)
        except SQLAlchemyError as exc:
            raise CLIError(f"Database error: {exc}") from exc
    finally:
        await engine.dispose()


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sentinelkit", description="Run and operate Sentinelkit job schedules"
    )
    parser.add_argument(
        "--dsn",
        default=settings.database_url,
        help="SQLAlchemy async DSN (defaults to SENTINEL_DATABASE_URL)",
    )
    parser.add_argument(
        "--log-level",
        default=settings.log_level,
        choices=list(LOG_LEVELS),
        help="Root logging level",
    )
    parser.set_defaults(settings=settings)
    commands = parser.add_subparsers(dest="command", required=True)

    trigger = commands.add_parser("trigger", help="Force a job to run on the next poll tick")
    trigger.add_argument("job")
    trigger.set_defaults(handler=_trigger)

    status = commands.add_parser("status", help="Show schedule state for one or all jobs")
    status.add_argument("job", nargs="?")
    status.set_defaults(handler=_status)

    for name in ("enable", "disable"):
        toggle = commands.add_parser(name, help=f"{name.capitalize()} a job")
        toggle.add_argument("job")
        toggle.set_defaults(handler=_set_enabled)

    prune = commands.add_parser("prune", help="Delete old rate-limit records")
    prune.add_argument(
        "--retention",
        type=_positive_float("retention"),
        default=float(PRUNE_RETENTION_S),
        help="Keep records newer than this many seconds",
    )
    prune.set_defaults(handler=_prune)

    check_key = commands.add_parser(
        "check-key", help="Validate an API key against the API under the shared rate limit"
    )
    check_key.add_argument("api_key")
    check_key.set_defaults(handler=_check_key)

    run = commands.add_parser("run", help="Run the scheduler loop")
    run.add_argument(
        "--job",
        action="append",
        required=True,
        help="Job factory in the form 'module:attr'; may be repeated",
    )
    run.add_argument(
        "--poll-interval",
        type=_positive_float("poll-interval"),
        default=settings.poll_interval,
    )
    run.add_argument(
        "--stale-claim-after",
        type=_positive_float("stale-claim-after"),
        default=settings.stale_claim_after,
        help="Reclaim running jobs locked longer than this many seconds",
    )
    run.add_argument(
        "--with-pruning",
        action="store_true",
        help="Also schedule the built-in rate-limit pruning job",
    )
    run.set_defaults(handler=_run_scheduler)
    return parser


def main(argv: Iterable[str] | None = None) -> None:
    try:
        settings = Settings.from_env()
    except ValueError as exc:
        print(f"sentinelkit: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    args = build_parser(settings).parse_args(None if argv is None else list(argv))
    try:
        asyncio.run(_dispatch(args))
    except KeyboardInterrupt:  # pragma: no cover - CLI convenience
        print("Received Ctrl+C, stopping scheduler...", file=sys.stderr)
        raise SystemExit(130)
    except CLIError as exc:
        print(f"sentinelkit: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc
    except Exception as exc:  # pragma: no cover - defensive
        print(f"sentinelkit: unexpected failure: {exc}", file=sys.stderr)
        raise SystemExit(1) from exc


if __name__ == "__main__":  # pragma: no cover
    main()
