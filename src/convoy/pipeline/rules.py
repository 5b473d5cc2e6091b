"""Trigger rules — decide whether a job runs for a given pipeline context.

A rule has an ``only`` clause and an ``except`` clause. Each clause holds
ref conditions and variable conditions:

    only:
      refs: [master, tags, "/^[0-9]+$/"]
    except:
      variables: ["$DEPLOY_TAG"]

Inside one key the conditions are OR'd. When a clause has both ``refs`` and
``variables``, every non-empty key must have a match (the clause is a
conjunction of disjunctions). ``except`` is checked first and always wins.

Condition kinds (tagged by ``kind``):

    ref       literal ref name, or ``/regex/`` (optional ``i`` flag)
    keyword   branches | tags | schedules | web | pushes | triggers | api
    variable  ``$NAME``, ``$NAME == "value"``, ``$NAME != "value"``

Evaluation is pure. A malformed condition anywhere in the rule makes the
whole rule fail closed: the job is skipped and a warning is logged. A deploy
job must never run because its rule could not be read. Unknown clause keys
(``varibles:``) are rejected when the rule is parsed.
"""

from __future__ import annotations

import logging
import re
from enum import Enum
from functools import lru_cache
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from convoy.pipeline.context import PipelineContext, TriggerSource
from convoy.pipeline.errors import RuleEvaluationError

logger = logging.getLogger("convoy.pipeline.rules")

REF_KEYWORDS = ("branches", "tags", "schedules", "web", "pushes", "triggers", "api")

_KEYWORD_SOURCES = {
    "schedules": TriggerSource.SCHEDULE,
    "web": TriggerSource.WEB,
    "pushes": TriggerSource.PUSH,
    "triggers": TriggerSource.TRIGGER,
    "api": TriggerSource.API,
}

# /pattern/ or /pattern/i
_REF_REGEX_RE = re.compile(r"^/(?P<body>.*)/(?P<flags>i?)$", re.DOTALL)

# $NAME, $NAME == "value", $NAME != 'value', $NAME == null
_VARIABLE_EXPR_RE = re.compile(
    r"""^\$(?P<name>[A-Za-z_][A-Za-z0-9_]*)
        (?:\s*(?P<op>==|!=)\s*
            (?:"(?P<dq>[^"]*)"|'(?P<sq>[^']*)'|(?P<null>null))
        )?$""",
    re.VERBOSE,
)


class RuleDecision(str, Enum):
    """Outcome of evaluating a trigger rule."""

    RUN = "run"
    SKIP = "skip"


# ── Conditions ───────────────────────────────────────────────────────────────


class RefCondition(BaseModel):
    """Match the ref name literally, or against a ``/regex/``."""

    kind: Literal["ref"] = "ref"
    pattern: str

    def check(self) -> None:
        if self.pattern.startswith("/"):
            _compile_ref_regex(self.pattern)
        elif not self.pattern:
            raise RuleEvaluationError(self.pattern, "empty ref pattern")

    def matches(self, context: PipelineContext) -> bool:
        if self.pattern.startswith("/"):
            return _compile_ref_regex(self.pattern).search(context.ref) is not None
        return context.ref == self.pattern


class KeywordCondition(BaseModel):
    """Match a class of refs or a trigger source."""

    kind: Literal["keyword"] = "keyword"
    keyword: Literal["branches", "tags", "schedules", "web", "pushes", "triggers", "api"]

    def check(self) -> None:
        return None

    def matches(self, context: PipelineContext) -> bool:
        if self.keyword == "branches":
            return not context.is_tag
        if self.keyword == "tags":
            return context.is_tag
        return context.source == _KEYWORD_SOURCES[self.keyword]


class VariableCondition(BaseModel):
    """Match on presence or value of a pipeline variable."""

    kind: Literal["variable"] = "variable"
    expression: str

    def check(self) -> None:
        _parse_variable_expression(self.expression)

    def matches(self, context: PipelineContext) -> bool:
        name, op, expected = _parse_variable_expression(self.expression)
        actual = context.get_variable(name)
        if op is None:
            return bool(actual)
        if op == "==":
            return actual == expected
        return actual != expected


RefLikeCondition = Annotated[Union[RefCondition, KeywordCondition], Field(discriminator="kind")]


def parse_ref_condition(raw: Any) -> Any:
    """Turn a config string into a ref or keyword condition (dicts pass through)."""
    if isinstance(raw, str):
        if raw in REF_KEYWORDS:
            return {"kind": "keyword", "keyword": raw}
        return {"kind": "ref", "pattern": raw}
    return raw


def parse_variable_condition(raw: Any) -> Any:
    if isinstance(raw, str):
        return {"kind": "variable", "expression": raw.strip()}
    return raw


# ── Clauses and rules ────────────────────────────────────────────────────────


class RuleClause(BaseModel):
    """One ``only`` or ``except`` clause."""

    refs: list[RefLikeCondition] = []
    variables: list[VariableCondition] = []

    # unknown keys are errors; a typo must not leave an empty clause
    model_config = {"extra": "forbid"}

    @model_validator(mode="before")
    @classmethod
    def _coerce_shorthand(cls, data: Any) -> Any:
        # only: master  /  only: [master, tags]  ->  only: {refs: [...]}
        if isinstance(data, str):
            return {"refs": [data]}
        if isinstance(data, (list, tuple)):
            return {"refs": list(data)}
        return data

    @field_validator("refs", mode="before")
    @classmethod
    def _parse_refs(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [value]
        return [parse_ref_condition(v) for v in value or []]

    @field_validator("variables", mode="before")
    @classmethod
    def _parse_variables(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = [value]
        return [parse_variable_condition(v) for v in value or []]

    def is_empty(self) -> bool:
        return not self.refs and not self.variables

    def conditions(self) -> list[RefCondition | KeywordCondition | VariableCondition]:
        return [*self.refs, *self.variables]

    def matches(self, context: PipelineContext) -> bool:
        """Every non-empty key needs at least one matching condition."""
        if self.refs and not any(c.matches(context) for c in self.refs):
            return False
        if self.variables and not any(c.matches(context) for c in self.variables):
            return False
        return True


class TriggerRule(BaseModel):
    """``only`` / ``except`` predicate attached to a job."""

    only: RuleClause | None = None
    except_: RuleClause | None = Field(None, alias="except")

    model_config = {"populate_by_name": True, "extra": "forbid"}

    def is_empty(self) -> bool:
        return (self.only is None or self.only.is_empty()) and (
            self.except_ is None or self.except_.is_empty()
        )

    def conditions(self) -> list[RefCondition | KeywordCondition | VariableCondition]:
        found: list[RefCondition | KeywordCondition | VariableCondition] = []
        for clause in (self.only, self.except_):
            if clause is not None:
                found.extend(clause.conditions())
        return found

    def evaluate(self, context: PipelineContext) -> RuleDecision:
        return evaluate(self, context)


# ── Evaluation ───────────────────────────────────────────────────────────────


def evaluate(rule: TriggerRule | None, context: PipelineContext) -> RuleDecision:
    """Decide RUN or SKIP for ``rule`` under ``context``.

    A job without a rule always runs. Malformed rules skip.
    """
    if rule is None or rule.is_empty():
        return RuleDecision.RUN
    try:
        return _evaluate(rule, context)
    except RuleEvaluationError as exc:
        logger.warning("Trigger rule failed closed (ref=%s): %s", context.ref, exc)
        return RuleDecision.SKIP


def _evaluate(rule: TriggerRule, context: PipelineContext) -> RuleDecision:
    # Check every condition up front so short-circuiting can't hide a bad one
    for condition in rule.conditions():
        condition.check()

    if rule.except_ is not None and not rule.except_.is_empty():
        if rule.except_.matches(context):
            return RuleDecision.SKIP
    if rule.only is not None and not rule.only.is_empty():
        if not rule.only.matches(context):
            return RuleDecision.SKIP
    return RuleDecision.RUN


def validate_rule(rule: TriggerRule | None) -> list[str]:
    """Return a message for each malformed condition in ``rule``."""
    if rule is None:
        return []
    errors: list[str] = []
    for condition in rule.conditions():
        try:
            condition.check()
        except RuleEvaluationError as exc:
            errors.append(str(exc))
    return errors


@lru_cache(maxsize=256)
def _compile_ref_regex(pattern: str) -> re.Pattern[str]:
    match = _REF_REGEX_RE.match(pattern)
    if not match:
        raise RuleEvaluationError(pattern, "regex patterns must be written as /pattern/")
    flags = re.IGNORECASE if match.group("flags") else 0
    try:
        return re.compile(match.group("body"), flags)
    except re.error as exc:
        raise RuleEvaluationError(pattern, f"invalid regex: {exc}") from exc


def _parse_variable_expression(expression: str) -> tuple[str, str | None, str | None]:
    match = _VARIABLE_EXPR_RE.match(expression.strip())
    if not match:
        raise RuleEvaluationError(
            expression, 'expected $NAME, $NAME == "value" or $NAME != "value"'
        )
    op = match.group("op")
    if op is None:
        return match.group("name"), None, None
    if match.group("null"):
        value = None
    elif match.group("dq") is not None:
        value = match.group("dq")
    else:
        value = match.group("sq")
    return match.group("name"), op, value


__all__ = [
    "REF_KEYWORDS",
    "KeywordCondition",
    "RefCondition",
    "RuleClause",
    "RuleDecision",
    "TriggerRule",
    "VariableCondition",
    "evaluate",
    "validate_rule",
]
