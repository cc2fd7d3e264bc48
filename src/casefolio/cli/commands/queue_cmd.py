from __future__ import annotations

import argparse

from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from casefolio.cli.common import open_runtime, styled_status
from casefolio.cli.context import CLIContext
from casefolio.domain.models.job import JOB_STATES

_HOUR = 3600.0


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("queue", help="Inspect and administer the document job queue")
    queue_subparsers = parser.add_subparsers(dest="queue_command", required=True)

    status = queue_subparsers.add_parser("status", help="Show job counts per state")
    status.add_argument("--state", choices=JOB_STATES, default=None, help="Also list jobs in this state")
    status.add_argument("--limit", type=int, default=20)
    status.set_defaults(handler=run_status)

    job = queue_subparsers.add_parser("job", help="Show one job")
    job.add_argument("job_id")
    job.set_defaults(handler=run_job)

    pause = queue_subparsers.add_parser("pause", help="Stop workers from claiming new jobs")
    pause.set_defaults(handler=run_pause)

    resume = queue_subparsers.add_parser("resume", help="Let workers claim jobs again")
    resume.set_defaults(handler=run_resume)

    cleanup = queue_subparsers.add_parser("cleanup", help="Delete old completed and failed jobs")
    cleanup.add_argument(
        "--completed-hours",
        type=float,
        default=24.0,
        help="Keep completed jobs newer than this many hours (default: 24)",
    )
    cleanup.add_argument(
        "--failed-hours",
        type=float,
        default=24.0 * 7,
        help="Keep failed jobs newer than this many hours (default: 168)",
    )
    cleanup.set_defaults(handler=run_cleanup)

    retry_failed = queue_subparsers.add_parser("retry-failed", help="Move every failed job back to waiting")
    retry_failed.set_defaults(handler=run_retry_failed)

    remove = queue_subparsers.add_parser("remove", help="Delete jobs that are not running")
    remove.add_argument(
        "--state",
        action="append",
        choices=[state for state in JOB_STATES if state != "active"],
        default=None,
        help="State to remove; repeatable (default: waiting, delayed, stalled and failed)",
    )
    remove.set_defaults(handler=run_remove)


def run_status(args: argparse.Namespace, ctx: CLIContext) -> int:
    queue = open_runtime(ctx).job_queue
    counts = queue.counts()

    lines = [f"{styled_status(state)}: {counts[state]}" for state in JOB_STATES]
    lines.append(f"total: {counts['total']}")
    lines.append(f"paused: {'yes' if queue.is_paused() else 'no'}")
    ctx.console.print(Panel.fit("\n".join(lines), title=f"Queue '{queue.queue_name}'"))

    if args.state is not None:
        jobs = queue.list_jobs(state=args.state, limit=args.limit)
        table = Table(title=f"Jobs in {args.state} ({len(jobs)})")
        table.add_column("Job ID")
        table.add_column("Document")
        table.add_column("Progress", justify="right")
        table.add_column("Attempts", justify="right")
        table.add_column("Failure", overflow="fold")
        for status in jobs:
            table.add_row(
                status.id,
                escape(status.payload.display_name),
                f"{status.progress}%",
                str(status.attempts),
                escape(status.failure_reason or ""),
            )
        ctx.console.print(table)
    return 0


def run_job(args: argparse.Namespace, ctx: CLIContext) -> int:
    status = open_runtime(ctx).job_queue.get_status(args.job_id)
    if status is None:
        ctx.console.print(f"[red]Job not found:[/red] {args.job_id}")
        return 1
    lines = [
        f"Job: {status.id}",
        f"State: {styled_status(status.queue_state)}",
        f"Progress: {status.progress}%",
        f"Attempts: {status.attempts}",
        f"Document: {escape(status.payload.display_name)} ({status.payload.document_id})",
        f"Case: {status.payload.case_id}",
        f"Priority: {status.payload.priority}",
        f"Started: {status.started_at or '-'}",
        f"Finished: {status.finished_at or '-'}",
    ]
    if status.failure_reason:
        lines.append(f"Failure: [red]{escape(status.failure_reason)}[/red]")
    ctx.console.print(Panel.fit("\n".join(lines), title="Job"))
    return 0


def run_pause(args: argparse.Namespace, ctx: CLIContext) -> int:
    open_runtime(ctx).job_queue.pause()
    ctx.console.print("[yellow]Queue paused[/yellow]")
    return 0


def run_resume(args: argparse.Namespace, ctx: CLIContext) -> int:
    open_runtime(ctx).job_queue.resume()
    ctx.console.print("[green]Queue resumed[/green]")
    return 0


def run_cleanup(args: argparse.Namespace, ctx: CLIContext) -> int:
    removed = open_runtime(ctx).job_queue.cleanup(
        completed_retention_seconds=max(0.0, args.completed_hours) * _HOUR,
        failed_retention_seconds=max(0.0, args.failed_hours) * _HOUR,
    )
    ctx.console.print(
        f"[green]Cleanup done[/green] completed removed: {removed['completed']}, failed removed: {removed['failed']}"
    )
    return 0


def run_retry_failed(args: argparse.Namespace, ctx: CLIContext) -> int:
    retried = open_runtime(ctx).job_queue.retry_all_failed()
    ctx.console.print(f"[green]Retried[/green] {retried} failed job(s)")
    return 0


def run_remove(args: argparse.Namespace, ctx: CLIContext) -> int:
    removed = open_runtime(ctx).job_queue.remove_jobs(args.state)
    ctx.console.print(f"[green]Removed[/green] {removed} job(s)")
    return 0
