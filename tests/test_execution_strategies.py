from __future__ import annotations

import sys
from pathlib import Path

import allure
import pytest

from course_queue.collector import OUTPUT_DIR_NAME
from course_queue.config import ExecutionEnvironment, ExecutionSettings
from course_queue.errors import ExecutionTimeoutError, TransientExecutionError, ValidationError
from course_queue.execution import IsolatedStrategy, LocalStrategy, create_strategy
from course_queue.execution.base import TIMEOUT_EXIT_CODE, filtered_environment
from course_queue.workspace import Workspace

pytestmark = [
    allure.epic("Analyzer Execution"),
    allure.feature("Execution Strategies"),
]

DEMO_ARGS = ["-m", "course_queue.execution.demo_analyzer"]


@pytest.fixture()
def workspace(tmp_path: Path, subject_dir: Path) -> Workspace:
    root = tmp_path / "ws"
    root.mkdir()
    return Workspace(job_id="job-1", root=root, source_dir=subject_dir)


def _local(analyzer_env: dict[str, str], *extra: str, timeout: float | None = None) -> LocalStrategy:
    return LocalStrategy(
        sys.executable,
        [*DEMO_ARGS, *extra],
        timeout_seconds=timeout,
        base_env=analyzer_env,
    )


def test_local_validate_resolves_executable_on_path(analyzer_env: dict[str, str]) -> None:
    assert _local(analyzer_env).validate().valid is True

    missing = LocalStrategy("course-analyzer-that-does-not-exist", base_env={"PATH": "/nonexistent"})
    result = missing.validate()

    assert result.valid is False
    assert "not found on PATH" in result.errors[0]
    with pytest.raises(ValidationError, match="local validation failed"):
        result.raise_if_invalid("local")


def test_local_command_config_inherits_env_minus_agent_session(workspace: Workspace) -> None:
    strategy = LocalStrategy(
        sys.executable,
        DEMO_ARGS,
        base_env={
            "PATH": str(Path(sys.executable).parent),
            "MY_SETTING": "1",
            "CLAUDECODE": "1",
            "CLAUDE_CODE_ENTRYPOINT": "cli",
        },
    )

    config = strategy.get_command_config(workspace)

    assert config.arguments[-5:] == ["analyze", str(workspace.source_dir), "--profile", "dev", "--verbose"]
    assert config.cwd == workspace.source_dir
    assert config.timeout_seconds is None
    assert config.environment["MY_SETTING"] == "1"
    assert "CLAUDECODE" not in config.environment
    assert "CLAUDE_CODE_ENTRYPOINT" not in config.environment
    assert config.environment["COURSE_QUEUE_MODE"] == "development"


def test_isolated_validate_is_strict(tmp_path: Path) -> None:
    allowed = tmp_path / "bin"
    allowed.mkdir()
    analyzer = allowed / "course-analyzer"
    analyzer.write_text("#!/bin/sh\n", "utf-8")
    outside = tmp_path / "elsewhere" / "course-analyzer"
    outside.parent.mkdir()
    outside.write_text("#!/bin/sh\n", "utf-8")

    def _strategy(executable: str, env: dict[str, str]) -> IsolatedStrategy:
        return IsolatedStrategy(
            executable,
            allowed_roots=[allowed],
            credential_env_var="COURSE_QUEUE_ANALYZER_TOKEN",
            base_env=env,
        )

    token_env = {"COURSE_QUEUE_ANALYZER_TOKEN": "secret"}
    assert _strategy(str(analyzer), token_env).validate().valid is True

    relative = _strategy("course-analyzer", token_env).validate()
    assert relative.valid is False
    assert any("absolute path" in error for error in relative.errors)

    escaped = _strategy(str(outside), token_env).validate()
    assert any("outside allowed roots" in error for error in escaped.errors)

    missing_file = _strategy(str(allowed / "missing"), token_env).validate()
    assert any("not found" in error for error in missing_file.errors)

    no_token = _strategy(str(analyzer), {}).validate()
    assert no_token.errors == ["Credential environment variable COURSE_QUEUE_ANALYZER_TOKEN is not set"]


def test_isolated_command_config_uses_minimal_environment(workspace: Workspace) -> None:
    strategy = IsolatedStrategy(
        "/opt/analyzer/bin/course-analyzer",
        ["--quiet"],
        allowed_roots=[Path("/opt/analyzer")],
        credential_env_var="COURSE_QUEUE_ANALYZER_TOKEN",
        home_dir=Path("/home/worker"),
        base_env={
            "PATH": "/usr/bin",
            "COURSE_QUEUE_ANALYZER_TOKEN": "secret",
            "AWS_SECRET_ACCESS_KEY": "leak",
            "HOME": "/root",
        },
    )

    config = strategy.get_command_config(workspace)

    assert config.argv == [
        "/opt/analyzer/bin/course-analyzer",
        "--quiet",
        "analyze",
        str(workspace.source_dir),
        "--profile",
        "production",
    ]
    assert config.cwd == workspace.root
    assert config.timeout_seconds == 3600
    assert config.environment == {
        "PATH": "/usr/bin",
        "HOME": "/home/worker",
        "PYTHONUNBUFFERED": "1",
        "COURSE_QUEUE_MODE": "production",
        "COURSE_QUEUE_ANALYZER_TOKEN": "secret",
    }


def test_execute_streams_stdout_lines_in_order(
    analyzer_env: dict[str, str],
    workspace: Workspace,
) -> None:
    lines: list[str] = []

    result = _local(analyzer_env, "--chapters", "2").execute(workspace, lines.append)

    assert result.succeeded
    assert result.exit_code == 0
    assert result.timed_out is False
    step_lines = [line for line in lines if line.startswith("Step ")]
    assert step_lines == [
        "Step 1 of 6: Extracting abstractions",
        "Step 2 of 6: Analyzing relationships",
        "Step 3 of 6: Ordering chapters",
        "Step 4 of 6: Generating chapters",
        "Step 5 of 6: Reviewing chapters",
        "Step 6 of 6: Creating tutorials",
    ]
    assert lines[0] == '{"level": "info", "msg": "Starting codebase analysis"}'
    assert lines[-1] == '{"level": "info", "msg": "Analysis complete"}'
    assert result.stdout.splitlines() == lines
    chapters = sorted((workspace.source_dir / OUTPUT_DIR_NAME / "chapters").iterdir())
    assert [path.name for path in chapters] == ["01_concept_1.md", "02_concept_2.md"]


def test_execute_reports_nonzero_exit_with_stderr(
    analyzer_env: dict[str, str],
    workspace: Workspace,
) -> None:
    result = _local(
        analyzer_env,
        "--exit-code",
        "3",
        "--error-message",
        "model quota exhausted",
    ).execute(workspace)

    assert result.exit_code == 3
    assert result.succeeded is False
    assert "model quota exhausted" in result.stderr
    with pytest.raises(TransientExecutionError, match="exited with code 3"):
        result.raise_for_status()


def test_execute_terminates_on_timeout(analyzer_env: dict[str, str], workspace: Workspace) -> None:
    lines: list[str] = []

    result = _local(analyzer_env, "--hang-at-step", "2", timeout=1.5).execute(workspace, lines.append)

    assert result.timed_out is True
    assert result.exit_code == TIMEOUT_EXIT_CODE
    assert any(line.startswith("Step 1 of 6") for line in lines)
    with pytest.raises(ExecutionTimeoutError, match="timed out after 1.5s"):
        result.raise_for_status(timeout_seconds=1.5)


def test_execute_stops_when_abort_is_requested(
    analyzer_env: dict[str, str],
    workspace: Workspace,
) -> None:
    seen: list[str] = []

    result = _local(analyzer_env, "--step-delay", "1").execute(
        workspace,
        seen.append,
        abort_requested=lambda: any(line.startswith("Step 1") for line in seen),
    )

    assert result.aborted is True
    assert result.timed_out is False
    assert not any(line.startswith("Step 4") for line in seen)
    result.raise_for_status()


def test_execute_missing_executable_is_a_validation_error(workspace: Workspace) -> None:
    strategy = LocalStrategy("/nonexistent/course-analyzer", base_env={"PATH": "/nonexistent"})

    with pytest.raises(ValidationError, match="not found"):
        strategy.execute(workspace)


def test_isolated_strategy_runs_demo_analyzer(
    analyzer_env: dict[str, str],
    workspace: Workspace,
) -> None:
    executable = Path(sys.executable)
    strategy = IsolatedStrategy(
        str(executable),
        DEMO_ARGS,
        allowed_roots=[executable.parent],
        credential_env_var="COURSE_QUEUE_ANALYZER_TOKEN",
        home_dir=workspace.root,
        timeout_seconds=60,
        base_env={**analyzer_env, "COURSE_QUEUE_ANALYZER_TOKEN": "secret"},
    )
    lines: list[str] = []

    assert strategy.validate().valid is True
    result = strategy.execute(workspace, lines.append)

    assert result.succeeded, result.stderr
    assert "Step 6 of 6: Creating tutorials" in lines


@pytest.mark.parametrize(
    ("environment", "expected"),
    [
        ("isolated", IsolatedStrategy),
        ("production", IsolatedStrategy),
        (ExecutionEnvironment.LOCAL, LocalStrategy),
        ("dev", LocalStrategy),
    ],
)
def test_create_strategy_selects_by_explicit_environment(
    environment: ExecutionEnvironment | str,
    expected: type,
) -> None:
    settings = ExecutionSettings(analyzer_command=("/opt/analyzer/bin/course-analyzer", "--quiet"))

    strategy = create_strategy(environment, settings, base_env={})

    assert isinstance(strategy, expected)
    assert strategy.base_arguments == ["--quiet"]


def test_create_strategy_rejects_unknown_environment() -> None:
    with pytest.raises(ValueError, match="Unknown execution environment"):
        create_strategy("staging", ExecutionSettings(), base_env={})


def test_filtered_environment_include_and_exclude() -> None:
    source = {"PATH": "/bin", "LANG": "C", "SECRET": "x", "CLAUDE_CODE_SSE_PORT": "1"}

    assert filtered_environment(source, include=("PATH", "SECRET"), exclude_names=("SECRET",)) == {
        "PATH": "/bin",
    }
    assert filtered_environment(source, exclude_prefixes=("CLAUDE_CODE_",)) == {
        "PATH": "/bin",
        "LANG": "C",
        "SECRET": "x",
    }
