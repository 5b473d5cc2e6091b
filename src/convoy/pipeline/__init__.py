"""Convoy pipeline system — staged jobs, trigger rules, artifacts, manual gates.

Key exports:
    PipelineController — Runs pipelines stage by stage, handles approvals and cancels
    JobExecutor, ApprovalGate — Single-job execution with retries
    PipelineGraph — Graph validation and per-context planning
    ArtifactStore — Expiring per-run job outputs
    RunRegistry — SQLite persistence
    JobDefinition, PipelineContext, TriggerRule — Definition models
    JobRun, PipelineRun, PipelineResult — Runtime state models
"""

from convoy.pipeline.artifacts import ArtifactStore
from convoy.pipeline.bodies import (
    BodyResult,
    CallableBody,
    JobBody,
    JobInvocation,
    ShellBody,
)
from convoy.pipeline.context import DEPLOY_TAG, PipelineContext, TriggerSource
from convoy.pipeline.engine import PipelineController
from convoy.pipeline.environments import EnvironmentTracker
from convoy.pipeline.errors import (
    ApprovalRejected,
    ArtifactConflictError,
    ArtifactExpired,
    ArtifactNotFound,
    DependencyUnsatisfied,
    ExecutionFailure,
    PipelineConfigError,
    PipelineError,
    PipelineGraphError,
    RuleEvaluationError,
)
from convoy.pipeline.executor import ApprovalGate, JobExecutor
from convoy.pipeline.models import (
    DEFAULT_STAGES,
    Artifact,
    ArtifactSpec,
    BlockReason,
    Environment,
    EnvironmentBinding,
    JobDefinition,
    JobRun,
    JobStatus,
    ManualGatePolicy,
    PipelineResult,
    PipelineRun,
    PipelineStatus,
    WhenMode,
)
from convoy.pipeline.planner import PipelineGraph, PipelinePlan, StagePlan, resolve_blocking
from convoy.pipeline.registry import RunRegistry, open_registry
from convoy.pipeline.rules import RuleDecision, TriggerRule, evaluate, validate_rule
from convoy.pipeline.templates import VariableExpander, build_variables

__all__ = [
    # Controller / executor
    "PipelineController",
    "JobExecutor",
    "ApprovalGate",
    # Planning
    "PipelineGraph",
    "PipelinePlan",
    "StagePlan",
    "resolve_blocking",
    # Rules
    "RuleDecision",
    "TriggerRule",
    "evaluate",
    "validate_rule",
    # Artifacts / environments / persistence
    "ArtifactStore",
    "EnvironmentTracker",
    "RunRegistry",
    "open_registry",
    # Bodies
    "BodyResult",
    "CallableBody",
    "JobBody",
    "JobInvocation",
    "ShellBody",
    # Context / variables
    "DEPLOY_TAG",
    "PipelineContext",
    "TriggerSource",
    "VariableExpander",
    "build_variables",
    # Models
    "DEFAULT_STAGES",
    "Artifact",
    "ArtifactSpec",
    "BlockReason",
    "Environment",
    "EnvironmentBinding",
    "JobDefinition",
    "JobRun",
    "JobStatus",
    "ManualGatePolicy",
    "PipelineResult",
    "PipelineRun",
    "PipelineStatus",
    "WhenMode",
    # Errors
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
