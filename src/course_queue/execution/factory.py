"""Strategy selection from an explicit environment value."""

from __future__ import annotations

import logging
from collections.abc import Mapping

from course_queue.config import ExecutionEnvironment, ExecutionSettings
from course_queue.execution.base import ExecutionStrategy
from course_queue.execution.isolated import IsolatedStrategy
from course_queue.execution.local import LocalStrategy

logger = logging.getLogger(__name__)


def create_strategy(
    environment: ExecutionEnvironment | str,
    settings: ExecutionSettings,
    *,
    base_env: Mapping[str, str] | None = None,
) -> ExecutionStrategy:
    """Build the strategy for ``environment``; never inspects process-wide mode flags."""

    resolved = (
        environment
        if isinstance(environment, ExecutionEnvironment)
        else ExecutionEnvironment.parse(environment)
    )
    executable, *base_arguments = settings.analyzer_command
    if resolved is ExecutionEnvironment.ISOLATED:
        strategy: ExecutionStrategy = IsolatedStrategy(
            executable,
            base_arguments,
            allowed_roots=settings.allowed_roots,
            credential_env_var=settings.credential_env_var,
            home_dir=settings.isolated_home,
            timeout_seconds=settings.isolated_timeout_seconds,
            base_env=base_env,
        )
    else:
        strategy = LocalStrategy(
            executable,
            base_arguments,
            timeout_seconds=settings.local_timeout_seconds,
            base_env=base_env,
        )
    logger.debug("Created %s execution strategy", strategy.name)
    return strategy
