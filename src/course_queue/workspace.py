"""Per-job workspace materialization and cleanup."""

from __future__ import annotations

import logging
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path

from course_queue.collector import OUTPUT_DIR_NAME
from course_queue.errors import TransientExecutionError, ValidationError
from course_queue.sanitization import sanitize_summary

logger = logging.getLogger(__name__)

_GIT_URL_RE = re.compile(r"^(?:https?://|ssh://|git@|file://)\S+$")
_IGNORED_COPY_PATTERNS = (".git", "node_modules", ".venv", "__pycache__", OUTPUT_DIR_NAME)


@dataclass(slots=True)
class Workspace:
    """Materialized job directory; the Analyzer runs against ``source_dir``."""

    job_id: str
    root: Path
    source_dir: Path


class WorkspaceManager:
    """Creates one isolated directory per job and always removes it afterwards."""

    def __init__(self, root_dir: Path, *, clone_timeout_seconds: int = 600) -> None:
        self.root_dir = root_dir
        self.clone_timeout_seconds = clone_timeout_seconds

    def materialize(self, *, job_id: str, subject_ref: str) -> Workspace:
        base_dir = self.root_dir / job_id
        if base_dir.exists():
            shutil.rmtree(base_dir, ignore_errors=True)
        base_dir.mkdir(parents=True, exist_ok=True)
        source_dir = base_dir / "source"

        try:
            if _GIT_URL_RE.match(subject_ref):
                self._clone(subject_ref, source_dir)
            else:
                local = Path(subject_ref).expanduser()
                if not local.is_dir():
                    raise ValidationError(f"Subject is not a directory or git URL: {subject_ref}")
                shutil.copytree(
                    local,
                    source_dir,
                    symlinks=True,
                    ignore=shutil.ignore_patterns(*_IGNORED_COPY_PATTERNS),
                )
            # Only output written by this run may be collected; drop committed leftovers.
            shutil.rmtree(source_dir / OUTPUT_DIR_NAME, ignore_errors=True)
        except BaseException:
            shutil.rmtree(base_dir, ignore_errors=True)
            raise
        logger.debug("Materialized %s into %s", subject_ref, source_dir)
        return Workspace(job_id=job_id, root=base_dir, source_dir=source_dir)

    def cleanup(self, workspace: Workspace) -> None:
        shutil.rmtree(workspace.root, ignore_errors=True)
        if workspace.root.exists():
            logger.warning("Workspace %s could not be fully removed", workspace.root)

    def _clone(self, url: str, target: Path) -> None:
        git = shutil.which("git")
        if git is None:
            raise ValidationError("git executable not found on PATH")
        try:
            completed = subprocess.run(  # noqa: S603
                [git, "clone", "--depth", "1", "--quiet", url, str(target)],
                capture_output=True,
                text=True,
                timeout=self.clone_timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as error:
            raise TransientExecutionError(
                f"git clone timed out after {self.clone_timeout_seconds}s",
            ) from error
        except OSError as error:
            raise TransientExecutionError(f"git clone could not start: {error}") from error
        if completed.returncode != 0:
            raise TransientExecutionError(
                sanitize_summary(
                    f"git clone failed with code {completed.returncode}: {completed.stderr}",
                ),
            )
