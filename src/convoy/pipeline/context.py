"""Pipeline context — the immutable snapshot a pipeline run is evaluated against.

Every trigger source populates the context differently:

    push      — branch ref, commit SHA
    tag       — tag ref with ``is_tag=True``
    schedule  — scheduled timer on a branch, ``source=schedule``
    web       — manual trigger from an operator, usually with variables
    trigger   — downstream/pipeline trigger token
    api       — HTTP API call

Global variables from the pipeline file are injected once at run start and
never mutated during the run.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

DEPLOY_TAG = "DEPLOY_TAG"


class TriggerSource(str, Enum):
    """What caused a pipeline run."""

    PUSH = "push"
    SCHEDULE = "schedule"
    WEB = "web"
    TRIGGER = "trigger"
    API = "api"


class PipelineContext(BaseModel):
    """Frozen snapshot of one pipeline invocation."""

    model_config = {"frozen": True}

    ref: str
    is_tag: bool = False
    commit_sha: str = ""
    source: TriggerSource = TriggerSource.PUSH
    project_name: str = ""

    # Variables supplied with the trigger (web form, API call, schedule)
    variables: dict[str, str] = Field(default_factory=dict)
    # Variables declared at the top of the pipeline file
    global_variables: dict[str, str] = Field(default_factory=dict)

    # ── Constructors per trigger source ─────────────────────────────────────

    @classmethod
    def for_push(cls, ref: str, commit_sha: str = "", **kwargs) -> PipelineContext:
        return cls(ref=ref, commit_sha=commit_sha, source=TriggerSource.PUSH, **kwargs)

    @classmethod
    def for_tag(cls, tag: str, commit_sha: str = "", **kwargs) -> PipelineContext:
        return cls(ref=tag, is_tag=True, commit_sha=commit_sha, source=TriggerSource.PUSH, **kwargs)

    @classmethod
    def for_schedule(cls, ref: str, commit_sha: str = "", **kwargs) -> PipelineContext:
        return cls(ref=ref, commit_sha=commit_sha, source=TriggerSource.SCHEDULE, **kwargs)

    @classmethod
    def for_web(
        cls,
        ref: str,
        variables: dict[str, str] | None = None,
        commit_sha: str = "",
        **kwargs,
    ) -> PipelineContext:
        return cls(
            ref=ref,
            commit_sha=commit_sha,
            source=TriggerSource.WEB,
            variables=dict(variables or {}),
            **kwargs,
        )

    # ── Variable access ─────────────────────────────────────────────────────

    def all_variables(self) -> dict[str, str]:
        """Global variables overlaid with trigger variables (trigger wins)."""
        merged = dict(self.global_variables)
        merged.update(self.variables)
        return merged

    def get_variable(self, name: str) -> str | None:
        if name in self.variables:
            return self.variables[name]
        return self.global_variables.get(name)

    def has_variable(self, name: str) -> bool:
        """A variable counts as present when it is defined and non-empty."""
        return bool(self.get_variable(name))

    @property
    def deploy_tag(self) -> str | None:
        return self.get_variable(DEPLOY_TAG) or None

    @property
    def tag(self) -> str | None:
        return self.ref if self.is_tag else None

    def predefined_variables(self, run_id: str) -> dict[str, str]:
        """CI_* variables every job body receives."""
        predefined = {
            "CI": "true",
            "CI_PIPELINE_ID": run_id,
            "CI_PIPELINE_SOURCE": self.source.value,
            "CI_COMMIT_REF_NAME": self.ref,
            "CI_COMMIT_SHA": self.commit_sha,
            "CI_PROJECT_NAME": self.project_name,
        }
        if self.is_tag:
            predefined["CI_COMMIT_TAG"] = self.ref
        return predefined
