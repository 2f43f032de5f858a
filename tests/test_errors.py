"""Tests for the nightly exception taxonomy."""

from __future__ import annotations

import pytest

from nightly.errors import (
    CheckpointError,
    CircularDependency,
    ConfigError,
    FatalWorkerError,
    NightlyError,
    RateLimitError,
    RepositoryError,
    TaskValidationError,
    TransientWorkerError,
    UnknownDependency,
    UnresolvableGraph,
    UnresolvedDependency,
    UsageLimitError,
    ValidationFailed,
    WorkerError,
    WorkerTimeout,
)


@pytest.mark.parametrize(
    "cls",
    [
        ConfigError,
        TaskValidationError,
        RepositoryError,
        CheckpointError,
        WorkerError,
    ],
)
def test_everything_is_a_nightly_error(cls):
    assert issubclass(cls, NightlyError)


@pytest.mark.parametrize(
    "cls",
    [RateLimitError, UsageLimitError, WorkerTimeout, FatalWorkerError, TransientWorkerError],
)
def test_classified_worker_errors(cls):
    assert issubclass(cls, WorkerError)


def test_unknown_dependency_message():
    exc = UnknownDependency("api", "schema")
    assert str(exc) == "Task api depends on non-existent task: schema"
    assert (exc.task_id, exc.dependency_id) == ("api", "schema")


def test_circular_dependency_message():
    exc = CircularDependency(["a", "b", "a"])
    assert str(exc) == "Circular dependency detected: a -> b -> a"


def test_unresolvable_graph_lists_remaining():
    assert "a, b" in str(UnresolvableGraph(["a", "b"]))


def test_unresolved_dependency():
    exc = UnresolvedDependency("t", ["x", "y"])
    assert str(exc) == "Task t has unresolved dependencies: x, y"
    assert exc.missing == ["x", "y"]


def test_validation_failed_keeps_every_error():
    exc = ValidationFailed(["tests failed", "lint failed"])
    assert exc.errors == ["tests failed", "lint failed"]
    assert str(exc) == "Task validation failed: tests failed, lint failed"


def test_task_validation_error_reference():
    assert TaskValidationError("bad", task_ref="Task a").task_ref == "Task a"
    assert TaskValidationError("bad").task_ref == ""
