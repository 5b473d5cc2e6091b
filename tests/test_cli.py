"""Tests for the convoy CLI.

Tests cover:
- convoy validate <file>
- convoy plan <file> --ref/--tag/--source/--var
- convoy run <file> (verdict exit codes, --approve, --workdir)
- convoy serve <file> (uvicorn wiring)
- Error handling (missing file, bad --var, invalid YAML)
"""

from __future__ import annotations

import textwrap
from unittest.mock import patch

import pytest

from convoy.__main__ import EXIT_CONFIG, EXIT_FAILED, EXIT_OK, build_parser, main

PIPELINE_YAML = """
name: substrate
stages: [test, build, deploy]
jobs:
  unit:
    stage: test
    script: ["true"]
  build-release:
    stage: build
    script: ["mkdir -p artifacts", "echo bundle > artifacts/out.txt"]
    artifacts:
      paths: [artifacts/]
    except:
      variables: ["$DEPLOY_TAG"]
  deploy:
    stage: deploy
    when: manual
    environment: staging
    script: ["true"]
"""


# ── Helpers ──────────────────────────────────────────────────────────────────


def _write(tmp_path, text: str = PIPELINE_YAML):
    path = tmp_path / "convoy.yml"
    path.write_text(textwrap.dedent(text))
    return str(path)


def _exit_code(argv: list[str]) -> int:
    with pytest.raises(SystemExit) as exc_info:
        main(argv)
    return exc_info.value.code


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in ("CONVOY_MAX_RUNNERS", "CONVOY_MANUAL_POLICY", "CONVOY_DB_PATH", "CONVOY_WORKDIR"):
        monkeypatch.delenv(var, raising=False)


# ── Tests: validate ──────────────────────────────────────────────────────────


class TestValidate:
    def test_ok(self, tmp_path, capsys):
        path = _write(tmp_path)
        assert _exit_code(["validate", path]) == EXIT_OK
        assert "OK (3 jobs, 3 stages)" in capsys.readouterr().out

    def test_problems(self, tmp_path, capsys):
        path = _write(
            tmp_path,
            """
            stages: [test]
            jobs:
              unit: {stage: build, script: ["true"]}
              lint: {stage: test, script: ["true"], dependencies: [ghost]}
            """,
        )
        assert _exit_code(["validate", path]) == EXIT_FAILED
        out = capsys.readouterr().out
        assert "2 problem(s)" in out
        assert "unknown stage 'build'" in out
        assert "unknown dependency 'ghost'" in out

    def test_missing_file(self, tmp_path, capsys):
        assert _exit_code(["validate", str(tmp_path / "absent.yml")]) == EXIT_CONFIG
        assert "Pipeline file not found" in capsys.readouterr().err

    def test_invalid_yaml(self, tmp_path, capsys):
        path = _write(tmp_path, "jobs: [unclosed")
        assert _exit_code(["validate", path]) == EXIT_CONFIG
        assert "Invalid YAML" in capsys.readouterr().err


# ── Tests: plan ──────────────────────────────────────────────────────────────


class TestPlan:
    def test_push_plan(self, tmp_path, capsys):
        assert _exit_code(["plan", _write(tmp_path)]) == EXIT_OK
        out = capsys.readouterr().out
        assert "Plan for substrate @ master (push)" in out
        assert "test: unit" in out
        assert "build: build-release" in out

    def test_deploy_tag_skips_build(self, tmp_path, capsys):
        argv = ["plan", _write(tmp_path), "--source", "web", "--var", "DEPLOY_TAG=v1.2.0"]
        assert _exit_code(argv) == EXIT_OK
        out = capsys.readouterr().out
        assert "(web)" in out
        assert "build: -  (skipped: build-release)" in out

    def test_tag_ref(self, tmp_path, capsys):
        assert _exit_code(["plan", _write(tmp_path), "--ref", "v1.0", "--tag"]) == EXIT_OK
        assert "@ v1.0 (push, tag)" in capsys.readouterr().out

    def test_bad_var(self, tmp_path, capsys):
        assert _exit_code(["plan", _write(tmp_path), "--var", "DEPLOY_TAG"]) == EXIT_CONFIG
        assert "KEY=VALUE" in capsys.readouterr().err

    def test_graph_error(self, tmp_path, capsys):
        path = _write(tmp_path, "stages: [test]\njobs:\n  unit: {stage: build, script: ['true']}\n")
        assert _exit_code(["plan", path]) == EXIT_CONFIG
        assert "unknown stage 'build'" in capsys.readouterr().err


# ── Tests: run ───────────────────────────────────────────────────────────────


class TestRun:
    def test_success_leaves_manual_job_parked(self, tmp_path, capsys):
        argv = ["run", _write(tmp_path), "--workdir", str(tmp_path / "work")]
        assert _exit_code(argv) == EXIT_OK
        out = capsys.readouterr().out
        assert "Pipeline substrate" in out
        assert "[build] build-release: success" in out
        assert "[deploy] deploy: manual" in out
        assert "Awaiting approval: deploy" in out
        assert "Artifact build-release_master from build-release" in out

    def test_pre_approved_manual_job_runs(self, tmp_path, capsys):
        argv = ["run", _write(tmp_path), "--workdir", str(tmp_path / "work"), "--approve", "deploy"]
        assert _exit_code(argv) == EXIT_OK
        out = capsys.readouterr().out
        assert "[deploy] deploy: success" in out
        assert "Awaiting approval" not in out

    def test_approve_unknown_job(self, tmp_path, capsys):
        argv = ["run", _write(tmp_path), "--workdir", str(tmp_path / "work"), "--approve", "ghost"]
        assert _exit_code(argv) == EXIT_CONFIG
        assert "--approve ghost" in capsys.readouterr().err

    def test_failure_exit_code(self, tmp_path, capsys):
        path = _write(
            tmp_path,
            """
            stages: [test, build]
            jobs:
              unit: {stage: test, script: ["exit 4"]}
              flaky: {stage: test, script: ["exit 1"], allow_failure: true}
              release: {stage: build, script: ["true"]}
            """,
        )
        assert _exit_code(["run", path, "--workdir", str(tmp_path / "work")]) == EXIT_FAILED
        out = capsys.readouterr().out
        assert ": failed" in out
        assert "[allowed to fail]" in out
        assert "release: blocked (stage_failed)" in out

    def test_retries_reported(self, tmp_path, capsys):
        path = _write(
            tmp_path,
            """
            stages: [test]
            jobs:
              unit: {stage: test, retry: 1, script: ["exit 1"]}
            """,
        )
        assert _exit_code(["run", path, "--workdir", str(tmp_path / "work")]) == EXIT_FAILED
        assert "after 2 attempts" in capsys.readouterr().out

    def test_records_history(self, tmp_path, monkeypatch):
        db_path = tmp_path / "history" / "runs.db"
        monkeypatch.setenv("CONVOY_DB_PATH", str(db_path))
        assert _exit_code(["run", _write(tmp_path), "--workdir", str(tmp_path / "work")]) == EXIT_OK
        assert db_path.exists()


# ── Tests: serve / parser ────────────────────────────────────────────────────


class TestServe:
    def test_serve_starts_uvicorn(self, tmp_path):
        with patch("uvicorn.run") as mock_run:
            code = _exit_code(["--log-level", "WARNING", "serve", _write(tmp_path), "--port", "9090"])
        assert code == EXIT_OK
        mock_run.assert_called_once()
        _, kwargs = mock_run.call_args
        assert kwargs["port"] == 9090
        assert kwargs["host"] == "0.0.0.0"
        assert kwargs["log_level"] == "warning"


class TestParser:
    def test_no_command_prints_help(self, capsys):
        assert _exit_code([]) == EXIT_CONFIG
        assert "usage: convoy" in capsys.readouterr().out

    def test_defaults(self):
        args = build_parser().parse_args(["run", "convoy.yml"])
        assert args.ref == "master"
        assert args.source == "push"
        assert args.approve is None
        assert args.max_runners is None

    def test_rejects_unknown_source(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["plan", "convoy.yml", "--source", "fax"])
