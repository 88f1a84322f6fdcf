"""Strictly validated, minimal-environment Analyzer launch."""

from __future__ import annotations

import os
from collections.abc import Mapping, Sequence
from pathlib import Path

from course_queue.execution.base import (
    CommandConfig,
    ExecutionStrategy,
    ValidationResult,
    filtered_environment,
)
from course_queue.workspace import Workspace

DEFAULT_ISOLATED_TIMEOUT_SECONDS = 3_600.0
DEFAULT_PASSTHROUGH_ENV: tuple[str, ...] = ("PATH", "LANG", "LC_ALL", "TZ", "PYTHONPATH")


class IsolatedStrategy(ExecutionStrategy):
    """Production-style launch: vetted executable, fixed HOME, hard timeout."""

    name = "isolated"

    def __init__(  # noqa: PLR0913
        self,
        executable: str,
        base_arguments: Sequence[str] = (),
        *,
        allowed_roots: Sequence[Path],
        credential_env_var: str,
        home_dir: Path = Path("/home/worker"),
        timeout_seconds: float | None = DEFAULT_ISOLATED_TIMEOUT_SECONDS,
        base_env: Mapping[str, str] | None = None,
        passthrough_env: tuple[str, ...] = DEFAULT_PASSTHROUGH_ENV,
    ) -> None:
        self.executable = executable
        self.base_arguments = list(base_arguments)
        self.allowed_roots = [Path(root) for root in allowed_roots]
        self.credential_env_var = credential_env_var
        self.home_dir = home_dir
        self.timeout_seconds = timeout_seconds
        self.base_env = dict(base_env if base_env is not None else os.environ)
        self.passthrough_env = passthrough_env

    def validate(self) -> ValidationResult:
        errors: list[str] = []
        warnings: list[str] = []
        executable = Path(self.executable)
        if not executable.is_absolute():
            errors.append(f"Analyzer executable must be an absolute path: {self.executable}")
        elif not executable.is_file():
            errors.append(f"Analyzer executable not found: {self.executable}")
        if not self.allowed_roots:
            errors.append("No allowed Analyzer roots configured")
        elif executable.is_absolute() and not any(
            _is_under(executable, root) for root in self.allowed_roots
        ):
            roots = ", ".join(str(root) for root in self.allowed_roots)
            errors.append(f"Analyzer executable {self.executable} is outside allowed roots: {roots}")
        if not self.base_env.get(self.credential_env_var, "").strip():
            errors.append(f"Credential environment variable {self.credential_env_var} is not set")
        if self.timeout_seconds is None:
            warnings.append("Isolated strategy running without a timeout")
        return ValidationResult(valid=not errors, errors=errors, warnings=warnings)

    def get_command_config(self, workspace: Workspace) -> CommandConfig:
        environment = filtered_environment(self.base_env, include=self.passthrough_env)
        environment.update(
            {
                "HOME": str(self.home_dir),
                "PYTHONUNBUFFERED": "1",
                "COURSE_QUEUE_MODE": "production",
                self.credential_env_var: self.base_env.get(self.credential_env_var, ""),
            },
        )
        return CommandConfig(
            executable=self.executable,
            arguments=[
                *self.base_arguments,
                "analyze",
                str(workspace.source_dir),
                "--profile",
                "production",
            ],
            environment=environment,
            timeout_seconds=self.timeout_seconds,
            cwd=workspace.root,
        )


def _is_under(path: Path, root: Path) -> bool:
    candidates = {path.absolute()}
    try:
        candidates.add(path.resolve())
    except OSError:
        pass
    root_abs = root.absolute()
    return any(candidate.is_relative_to(root_abs) for candidate in candidates)
