"""Tests for the pipeline-orchestrator command line."""
import os
import textwrap

import pytest
from typer.testing import CliRunner

from pipeline_orchestrator import cli
from pipeline_orchestrator.cli import EXIT_CANCELLED, EXIT_FAILED, EXIT_INVALID, EXIT_OK, app

runner = CliRunner()

posix_only = pytest.mark.skipif(os.name != "posix", reason="runs POSIX shell jobs")


def _pipeline(tmp_path, text):
    path = tmp_path / "pipeline.yml"
    path.write_text(textwrap.dedent(text))
    return str(path)


@posix_only
def test_run_success(tmp_path):
    path = _pipeline(tmp_path, """
        jobs:
          build: {run: "echo building"}
          test: {run: "echo testing", needs: build}
    """)
    result = runner.invoke(app, ["run", path, "-j", "2", "--log-level", "warning"])
    assert result.exit_code == EXIT_OK, result.output
    assert "succeeded" in result.stdout
    assert "build" in result.stdout and "test" in result.stdout


@posix_only
def test_run_failure_exit_code(tmp_path):
    path = _pipeline(tmp_path, """
        jobs:
          build: {run: "exit 4"}
          deploy: {run: "echo never", needs: build}
    """)
    result = runner.invoke(app, ["run", path, "--log-level", "error"])
    assert result.exit_code == EXIT_FAILED
    assert "exit code 4" in result.stdout
    assert "dependency 'build' failed" in result.stdout


@posix_only
def test_run_with_retry_limit(tmp_path):
    counter = tmp_path / "count"
    path = _pipeline(tmp_path, f"""
        jobs:
          flaky:
            run: "echo x >> {counter}; exit 1"
            max_retries: 5
    """)
    config = tmp_path / "cfg.yml"
    config.write_text("retry: {base_delay_s: 0, jitter: 0}\n")
    result = runner.invoke(
        app, ["run", path, "--retry-limit", "1", "--config", str(config), "--log-level", "error"]
    )
    assert result.exit_code == EXIT_FAILED
    assert counter.read_text().count("x") == 2
    assert "attempts=2" in result.stdout


def test_run_cancelled_exit_code(tmp_path, monkeypatch):
    class CancellingOrchestrator(cli.PipelineOrchestrator):
        def prepare(self, descriptors):
            ctx = super().prepare(descriptors)
            self.cancel(ctx.run_id, "user requested")
            return ctx

    monkeypatch.setattr(cli, "PipelineOrchestrator", CancellingOrchestrator)
    path = _pipeline(tmp_path, """
        jobs:
          build: {run: "echo never"}
    """)
    result = runner.invoke(app, ["run", path, "--log-level", "error"])
    assert result.exit_code == EXIT_CANCELLED
    assert "cancelled" in result.stdout
    assert "reason: user requested" in result.stdout


@posix_only
def test_run_interrupted_by_sigint(tmp_path):
    path = _pipeline(tmp_path, """
        jobs:
          build: {run: "sleep 0.3; kill -INT $PPID; sleep 10"}
          deploy: {run: "echo never", needs: build}
    """)
    config = tmp_path / "cfg.yml"
    config.write_text("termination_grace_s: 1\n")
    result = runner.invoke(app, ["run", path, "--config", str(config), "--log-level", "error"])
    assert result.exit_code == EXIT_CANCELLED, result.output
    assert "reason: received SIGINT" in result.stdout
    assert "attempts=1" in result.stdout


def test_run_invalid_pipeline(tmp_path):
    path = _pipeline(tmp_path, """
        jobs:
          a: {run: "true", needs: b}
          b: {run: "true", needs: a}
    """)
    result = runner.invoke(app, ["run", path, "--log-level", "error"])
    assert result.exit_code == EXIT_INVALID


def test_run_invalid_config(tmp_path):
    path = _pipeline(tmp_path, "jobs: {a: {run: 'true'}}\n")
    result = runner.invoke(app, ["run", path, "--config", str(tmp_path / "missing.yml")])
    assert result.exit_code == EXIT_INVALID


def test_validate(tmp_path):
    path = _pipeline(tmp_path, "jobs: {a: {run: 'true'}, b: {run: 'true', needs: a}}\n")
    result = runner.invoke(app, ["validate", path])
    assert result.exit_code == EXIT_OK
    assert "OK (2 jobs)" in result.stdout


def test_validate_reports_unknown_dependency(tmp_path):
    path = _pipeline(tmp_path, "jobs: {a: {run: 'true', needs: z}}\n")
    result = runner.invoke(app, ["validate", path])
    assert result.exit_code == EXIT_INVALID


def test_plan_prints_stages(tmp_path):
    path = _pipeline(tmp_path, """
        jobs:
          lint: {run: "true"}
          build: {run: "true"}
          test: {run: "true", needs: build}
          deploy: {run: "true", needs: [test, lint]}
    """)
    result = runner.invoke(app, ["plan", path])
    assert result.exit_code == EXIT_OK
    assert result.stdout.splitlines() == [
        "stage 1: build, lint",
        "stage 2: test",
        "stage 3: deploy",
    ]
