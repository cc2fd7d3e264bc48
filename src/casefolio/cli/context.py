from __future__ import annotations

from dataclasses import dataclass

from rich.console import Console

from casefolio.core.config import AppPaths, PipelineSettings


@dataclass(slots=True)
class CLIContext:
    paths: AppPaths
    console: Console
    settings: PipelineSettings
