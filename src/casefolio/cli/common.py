from __future__ import annotations

from casefolio.application.services.project_service import ProjectService
from casefolio.application.services.runtime import Runtime, build_runtime
from casefolio.cli.context import CLIContext


def open_runtime(ctx: CLIContext) -> Runtime:
    ProjectService(ctx.paths).require_initialized()
    return build_runtime(ctx.paths, ctx.settings)


STATUS_STYLES = {
    "waiting": "yellow",
    "processing": "cyan",
    "done": "green",
    "error": "red",
    "delayed": "yellow",
    "active": "cyan",
    "stalled": "magenta",
    "completed": "green",
    "failed": "red",
}


def styled_status(status: str) -> str:
    style = STATUS_STYLES.get(status)
    return f"[{style}]{status}[/{style}]" if style else status
