from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from casefolio.core.config import AppPaths
from casefolio.core.errors import ProjectNotInitializedError
from casefolio.core.files import ensure_directory
from casefolio.infrastructure.db.sqlite import initialize_schema


@dataclass(slots=True)
class InitResult:
    paths_created: list[Path]
    db_path: Path


class ProjectService:
    def __init__(self, paths: AppPaths) -> None:
        self.paths = paths

    def init_project(self) -> InitResult:
        paths_created: list[Path] = []

        for path in (self.paths.data_dir, self.paths.uploads_dir):
            if not path.exists():
                paths_created.append(path)
            ensure_directory(path)

        initialize_schema(self.paths.db_path)

        return InitResult(paths_created=paths_created, db_path=self.paths.db_path)

    def is_initialized(self) -> bool:
        return self.paths.db_path.exists()

    def require_initialized(self) -> None:
        if not self.is_initialized():
            raise ProjectNotInitializedError(
                f"Project is not initialized. Run 'casefolio init' first in {self.paths.project_root}"
            )
        # Brings older databases up to the current schema.
        self.init_project()
