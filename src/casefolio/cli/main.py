from __future__ import annotations

import argparse
import logging
from pathlib import Path

from rich.console import Console

from casefolio.cli.commands import case_cmd, init_cmd, queue_cmd, worker_cmd
from casefolio.cli.context import CLIContext
from casefolio.core.config import load_paths, load_settings
from casefolio.core.errors import CaseFolioError
from casefolio.core.logging import configure_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="casefolio",
        description="CaseFolio OCR pipeline CLI",
    )
    parser.add_argument(
        "--project-root",
        type=Path,
        default=Path.cwd(),
        help="Project root to use for .casefolio data (default: current working directory)",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0)

    subparsers = parser.add_subparsers(dest="command", required=True)
    init_cmd.register(subparsers)
    case_cmd.register(subparsers)
    queue_cmd.register(subparsers)
    worker_cmd.register(subparsers)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    console = Console()
    configure_logging(args.verbose)

    paths = load_paths(args.project_root)
    ctx = CLIContext(paths=paths, console=console, settings=load_settings())

    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 2

    try:
        return handler(args, ctx)
    except CaseFolioError as exc:
        logger.error(str(exc))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
