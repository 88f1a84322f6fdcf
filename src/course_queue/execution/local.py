"""Lenient Analyzer launch for a developer machine."""

from __future__ import annotations

import os
import shutil
from collections.abc import Mapping, Sequence

from course_queue.execution.base import (
    CommandConfig,
    ExecutionStrategy,
    ValidationResult,
    filtered_environment,
)
from course_queue.workspace import Workspace

# Variables injected by an outer agent session confuse a nested Analyzer.
AGENT_SESSION_ENV_PREFIXES: tuple[str, ...] = ("CLAUDE_CODE_",)
AGENT_SESSION_ENV_NAMES: tuple[str, ...] = ("CLAUDECODE",)


class LocalStrategy(ExecutionStrategy):
    """Development launch: PATH lookup, inherited environment, no timeout."""

    name = "local"

    def __init__(
        self,
        executable: str,
        base_arguments: Sequence[str] = (),
        *,
        timeout_seconds: float | None = None,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        self.executable = executable
        self.base_arguments = list(base_arguments)
        self.timeout_seconds = timeout_seconds
        self.base_env = dict(base_env if base_env is not None else os.environ)

    def validate(self) -> ValidationResult:
        resolved = self._resolve_executable()
        if resolved is None:
            return ValidationResult(
                valid=False,
                errors=[f"Analyzer executable not found on PATH: {self.executable}"],
            )
        return ValidationResult(valid=True)

    def get_command_config(self, workspace: Workspace) -> CommandConfig:
        environment = filtered_environment(
            self.base_env,
            exclude_prefixes=AGENT_SESSION_ENV_PREFIXES,
            exclude_names=AGENT_SESSION_ENV_NAMES,
        )
        environment["COURSE_QUEUE_MODE"] = "development"
        environment["PYTHONUNBUFFERED"] = "1"
        return CommandConfig(
            executable=self._resolve_executable() or self.executable,
            arguments=[
                *self.base_arguments,
                "analyze",
                str(workspace.source_dir),
                "--profile",
                "dev",
                "--verbose",
            ],
            environment=environment,
            timeout_seconds=self.timeout_seconds,
            cwd=workspace.source_dir,
        )

    def _resolve_executable(self) -> str | None:
        return shutil.which(self.executable, path=self.base_env.get("PATH"))
