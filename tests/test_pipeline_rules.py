"""Tests for trigger rule evaluation."""

from __future__ import annotations

import logging

import pytest
from pydantic import ValidationError

from convoy.pipeline.context import PipelineContext, TriggerSource
from convoy.pipeline.rules import RuleDecision, TriggerRule, evaluate, validate_rule

RUN = RuleDecision.RUN
SKIP = RuleDecision.SKIP


def _rule(**kwargs) -> TriggerRule:
    return TriggerRule.model_validate(kwargs)


# ── Basics ───────────────────────────────────────────────────────────────────


class TestNoRule:
    def test_none_runs(self):
        assert evaluate(None, PipelineContext.for_push("feature/x")) == RUN

    def test_empty_rule_runs(self):
        assert evaluate(TriggerRule(), PipelineContext.for_push("feature/x")) == RUN


class TestRefConditions:
    def test_literal_ref(self):
        rule = _rule(only=["master"])
        assert evaluate(rule, PipelineContext.for_push("master")) == RUN
        assert evaluate(rule, PipelineContext.for_push("main")) == SKIP

    def test_regex_ref(self):
        rule = _rule(only=["/^[0-9]+$/"])
        assert evaluate(rule, PipelineContext.for_push("1234")) == RUN
        assert evaluate(rule, PipelineContext.for_push("pr-1234")) == SKIP

    def test_regex_is_search_not_fullmatch(self):
        rule = _rule(only=["/release/"])
        assert evaluate(rule, PipelineContext.for_push("v2-release-candidate")) == RUN

    def test_case_insensitive_flag(self):
        rule = _rule(only=["/^master$/i"])
        assert evaluate(rule, PipelineContext.for_push("MASTER")) == RUN

    def test_tags_keyword(self):
        rule = _rule(only=["tags"])
        assert evaluate(rule, PipelineContext.for_tag("v1.0")) == RUN
        assert evaluate(rule, PipelineContext.for_push("master")) == SKIP

    def test_branches_keyword(self):
        rule = _rule(only=["branches"])
        assert evaluate(rule, PipelineContext.for_push("master")) == RUN
        assert evaluate(rule, PipelineContext.for_tag("v1.0")) == SKIP

    def test_source_keywords(self):
        assert evaluate(_rule(only=["schedules"]), PipelineContext.for_schedule("master")) == RUN
        assert evaluate(_rule(only=["web"]), PipelineContext.for_web("master")) == RUN
        assert evaluate(_rule(only=["web"]), PipelineContext.for_push("master")) == SKIP
        api = PipelineContext(ref="master", source=TriggerSource.API)
        assert evaluate(_rule(only=["api"]), api) == RUN

    def test_refs_are_ored(self):
        rule = _rule(only=["master", "tags", "web"])
        assert evaluate(rule, PipelineContext.for_push("master")) == RUN
        assert evaluate(rule, PipelineContext.for_tag("v0.9")) == RUN
        assert evaluate(rule, PipelineContext.for_web("feature")) == RUN
        assert evaluate(rule, PipelineContext.for_push("feature")) == SKIP


class TestVariableConditions:
    def test_presence(self):
        rule = _rule(only={"variables": ["$DEPLOY_TAG"]})
        assert evaluate(rule, PipelineContext.for_web("master", {"DEPLOY_TAG": "v1"})) == RUN
        assert evaluate(rule, PipelineContext.for_web("master")) == SKIP

    def test_empty_value_is_absent(self):
        rule = _rule(only={"variables": ["$DEPLOY_TAG"]})
        assert evaluate(rule, PipelineContext.for_web("master", {"DEPLOY_TAG": ""})) == SKIP

    def test_equality(self):
        rule = _rule(only={"variables": ['$ARCH == "x86_64"']})
        ctx = PipelineContext(ref="master", global_variables={"ARCH": "x86_64"})
        assert evaluate(rule, ctx) == RUN
        other = PipelineContext(ref="master", global_variables={"ARCH": "armv7"})
        assert evaluate(rule, other) == SKIP

    def test_inequality_single_quotes(self):
        rule = _rule(only={"variables": ["$ARCH != 'armv7'"]})
        assert evaluate(rule, PipelineContext(ref="master")) == RUN


class TestClauses:
    def test_deploy_tag_except_skips(self):
        rule = _rule(only=["master", "tags", "web"], **{"except": {"variables": ["$DEPLOY_TAG"]}})
        ctx = PipelineContext.for_web("master", {"DEPLOY_TAG": "v1.2.0"})
        assert evaluate(rule, ctx) == SKIP

    def test_except_wins_over_only(self):
        rule = _rule(only=["master"], **{"except": ["master"]})
        assert evaluate(rule, PipelineContext.for_push("master")) == SKIP

    def test_refs_and_variables_both_required(self):
        rule = _rule(only={"refs": ["master"], "variables": ["$DEPLOY_TAG"]})
        assert evaluate(rule, PipelineContext.for_web("master", {"DEPLOY_TAG": "v1"})) == RUN
        assert evaluate(rule, PipelineContext.for_web("master")) == SKIP
        assert evaluate(rule, PipelineContext.for_web("feature", {"DEPLOY_TAG": "v1"})) == SKIP

    def test_except_only(self):
        rule = _rule(**{"except": ["tags"]})
        assert evaluate(rule, PipelineContext.for_push("anything")) == RUN
        assert evaluate(rule, PipelineContext.for_tag("v1")) == SKIP

    def test_method_delegates(self):
        assert _rule(only=["master"]).evaluate(PipelineContext.for_push("master")) == RUN


# ── Malformed rules ──────────────────────────────────────────────────────────


class TestFailClosed:
    def test_bad_regex_skips(self, caplog):
        rule = _rule(only=["/[unclosed/"])
        with caplog.at_level(logging.WARNING, logger="convoy.pipeline.rules"):
            assert evaluate(rule, PipelineContext.for_push("master")) == SKIP
        assert "failed closed" in caplog.text

    def test_bad_expression_in_except_still_skips(self):
        # the only clause would match, but a broken condition anywhere skips
        rule = _rule(only=["master"], **{"except": {"variables": ["DEPLOY_TAG"]}})
        assert evaluate(rule, PipelineContext.for_push("master")) == SKIP

    def test_unterminated_slash(self):
        rule = _rule(only=["/^master"])
        assert evaluate(rule, PipelineContext.for_push("master")) == SKIP

    def test_validate_rule_reports_each_problem(self):
        rule = _rule(only=["/[bad/", "master"], **{"except": {"variables": ["$OK", "not-a-var"]}})
        problems = validate_rule(rule)
        assert len(problems) == 2
        assert "invalid regex" in problems[0]

    def test_validate_rule_clean(self):
        assert validate_rule(_rule(only=["master", "/^v[0-9]+/"])) == []
        assert validate_rule(None) == []

    def test_unknown_keyword_like_dict_rejected_at_parse(self):
        with pytest.raises(ValidationError):
            _rule(only={"refs": [{"kind": "keyword", "keyword": "nightly"}]})

    def test_misspelled_clause_key_rejected_at_parse(self):
        with pytest.raises(ValidationError, match="varibles"):
            _rule(**{"except": {"varibles": ["$DEPLOY_TAG"]}})

    def test_unknown_rule_key_rejected_at_parse(self):
        with pytest.raises(ValidationError):
            TriggerRule.model_validate({"onyl": ["master"]})
