"""Exceptions raised by the convoy pipeline engine.

Exception hierarchy::

    PipelineError
        PipelineConfigError (also ValueError)
            PipelineGraphError
        RuleEvaluationError
        DependencyUnsatisfied
        ExecutionFailure
        ApprovalRejected
        ArtifactNotFound (also KeyError)
            ArtifactExpired
        ArtifactConflictError

Only configuration errors escape to callers of the controller. The others
are raised inside the engine and converted into job statuses: a rule error
skips the job, an unsatisfied dependency blocks it, an execution failure is
retried, a rejection fails it.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all convoy pipeline errors."""


class PipelineConfigError(PipelineError, ValueError):
    """A pipeline file, template or job definition is invalid."""


class PipelineGraphError(PipelineConfigError):
    """The job graph is inconsistent (unknown stages, bad dependencies, cycles).

    Attributes:
        errors: Every problem found, one message each.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("Invalid pipeline graph:\n  - " + "\n  - ".join(self.errors))


class RuleEvaluationError(PipelineError):
    """A trigger rule condition is malformed and cannot be evaluated."""

    def __init__(self, condition: str, reason: str) -> None:
        super().__init__(f"Cannot evaluate condition {condition!r}: {reason}")
        self.condition = condition
        self.reason = reason


class DependencyUnsatisfied(PipelineError):
    """A job needs output from an upstream job that is not available."""

    def __init__(self, job_name: str, dependency: str, reason: str) -> None:
        super().__init__(f"Job '{job_name}' cannot use '{dependency}': {reason}")
        self.job_name = job_name
        self.dependency = dependency
        self.reason = reason


class ExecutionFailure(PipelineError):
    """A job body exited non-zero, raised, or timed out."""

    def __init__(self, job_name: str, attempt: int, reason: str, exit_code: int | None = None) -> None:
        super().__init__(f"Job '{job_name}' attempt {attempt} failed: {reason}")
        self.job_name = job_name
        self.attempt = attempt
        self.reason = reason
        self.exit_code = exit_code


class ApprovalRejected(PipelineError):
    """An operator rejected a manual job."""

    def __init__(self, job_name: str, actor: str = "", reason: str = "") -> None:
        by = f" by {actor}" if actor else ""
        why = f": {reason}" if reason else ""
        super().__init__(f"Manual job '{job_name}' rejected{by}{why}")
        self.job_name = job_name
        self.actor = actor
        self.reason = reason


class ArtifactNotFound(PipelineError, KeyError):
    """No artifact is stored for a (job, run) key."""

    def __init__(self, job_name: str, run_id: str) -> None:
        super().__init__(f"No artifact for job '{job_name}' in run {run_id}")
        self.job_name = job_name
        self.run_id = run_id

    def __str__(self) -> str:
        # KeyError.__str__ would repr() the message
        return str(self.args[0])


class ArtifactExpired(ArtifactNotFound):
    """The artifact existed but its retention period has elapsed."""

    def __init__(self, job_name: str, run_id: str) -> None:
        PipelineError.__init__(self, f"Artifact for job '{job_name}' in run {run_id} has expired")
        self.job_name = job_name
        self.run_id = run_id


class ArtifactConflictError(PipelineError):
    """A second writer tried to publish an artifact for the same (job, run)."""

    def __init__(self, job_name: str, run_id: str) -> None:
        super().__init__(f"Artifact for job '{job_name}' in run {run_id} is already published")
        self.job_name = job_name
        self.run_id = run_id


__all__ = [
    "ApprovalRejected",
    "ArtifactConflictError",
    "ArtifactExpired",
    "ArtifactNotFound",
    "DependencyUnsatisfied",
    "ExecutionFailure",
    "PipelineConfigError",
    "PipelineError",
    "PipelineGraphError",
    "RuleEvaluationError",
]
