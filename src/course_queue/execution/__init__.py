"""Analyzer execution strategies."""

from course_queue.config import ExecutionEnvironment
from course_queue.execution.base import (
    CommandConfig,
    ExecutionResult,
    ExecutionStrategy,
    ValidationResult,
)
from course_queue.execution.factory import create_strategy
from course_queue.execution.isolated import IsolatedStrategy
from course_queue.execution.local import LocalStrategy

__all__ = [
    "CommandConfig",
    "ExecutionEnvironment",
    "ExecutionResult",
    "ExecutionStrategy",
    "IsolatedStrategy",
    "LocalStrategy",
    "ValidationResult",
    "create_strategy",
]
