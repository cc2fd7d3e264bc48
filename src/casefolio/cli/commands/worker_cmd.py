from __future__ import annotations

import argparse
import logging
import signal

from casefolio.cli.common import open_runtime
from casefolio.cli.context import CLIContext

logger = logging.getLogger(__name__)


def register(subparsers: argparse._SubParsersAction[argparse.ArgumentParser]) -> None:
    parser = subparsers.add_parser("worker", help="Run OCR workers")
    worker_subparsers = parser.add_subparsers(dest="worker_command", required=True)

    run_parser = worker_subparsers.add_parser("run", help="Process queued documents until interrupted")
    run_parser.add_argument("--workers", type=int, default=None, help="Concurrent document jobs")
    run_parser.add_argument("--engines", type=int, default=None, help="Shared OCR engine instances")
    run_parser.add_argument(
        "--once",
        action="store_true",
        help="Process every job that is ready now on this thread, then exit",
    )
    run_parser.add_argument(
        "--drain-timeout",
        type=float,
        default=None,
        help="Seconds to wait for in-flight jobs on shutdown (default: wait for them to finish)",
    )
    run_parser.set_defaults(handler=run)


def run(args: argparse.Namespace, ctx: CLIContext) -> int:
    runtime = open_runtime(ctx)
    pool = runtime.build_worker_pool(workers=args.workers, engines=args.engines)

    if args.once:
        try:
            processed = pool.run_pending()
        finally:
            pool.shutdown()
        ctx.console.print(f"[green]Processed[/green] {processed} job(s)")
        return 0

    def handle_signal(signum: int, _frame) -> None:
        logger.warning("Received %s", signal.Signals(signum).name)
        pool.request_stop()

    previous = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    pool.start()
    ctx.console.print(
        f"[green]Workers running[/green] ({pool.size} workers, {pool.engine_pool.size} engines). Press Ctrl+C to stop."
    )
    try:
        pool.wait()
    finally:
        pool.shutdown(timeout=args.drain_timeout)
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    ctx.console.print("[green]Workers stopped[/green]")
    return 0
