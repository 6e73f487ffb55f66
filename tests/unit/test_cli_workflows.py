import asyncio

import pytest
from typer.testing import CliRunner

import shopflow.persistence as persistence
from shopflow.cli import app
from shopflow.contracts import (
    ErrorResult,
    RunStatus,
    StepEntry,
    StepStatus,
    WorkflowRun,
)
from shopflow.persistence import InMemoryWorkflowJournal


@pytest.fixture
def journal(tmp_path, monkeypatch):
    monkeypatch.setenv("SHOPFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("SHOPFLOW_STORE_URL", f"sqlite+aiosqlite:///{tmp_path / 'shop.db'}")
    journal = InMemoryWorkflowJournal()
    monkeypatch.setattr(persistence, "_journal_instance", journal)
    return journal


def test_workflow_list_shows_runs(journal):
    done = WorkflowRun(definition_name="campaign_generation")
    running = WorkflowRun(definition_name="online_booking")
    asyncio.run(journal.create_run(done))
    asyncio.run(journal.create_run(running))
    asyncio.run(journal.finish_run(done.id, RunStatus.FAILED, ErrorResult(error="boom")))

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0, result.output
    assert done.id in result.output
    assert running.id in result.output
    assert "online_booking" in result.output

    result = runner.invoke(app, ["workflow", "list", "--status", "failed"])
    assert result.exit_code == 0, result.output
    assert done.id in result.output
    assert running.id not in result.output


def test_workflow_list_empty(journal):
    result = CliRunner().invoke(app, ["workflow", "list"])
    assert result.exit_code == 0
    assert "No workflows found" in result.output


def test_workflow_show_details_and_missing(journal):
    run = WorkflowRun(definition_name="campaign_generation", args={"goal": "spring"})
    asyncio.run(journal.create_run(run))
    asyncio.run(
        journal.append(
            run.id,
            StepEntry(
                step_index=0,
                step_name="generate_campaign_text",
                attempt=1,
                status=StepStatus.FAILED,
                error="quota exceeded",
            ),
        )
    )

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "show", run.id])
    assert result.exit_code == 0, result.output
    assert run.id in result.output
    assert "generate_campaign_text #1: failed (quota exceeded)" in result.output
    assert '"goal": "spring"' in result.output

    missing = runner.invoke(app, ["workflow", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Workflow not found" in missing.output


def test_workflow_cancel(journal):
    run = WorkflowRun(definition_name="online_booking")
    asyncio.run(journal.create_run(run))

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "cancel", run.id])
    assert result.exit_code == 0, result.output
    assert f"Canceled {run.id}" in result.output

    stored = asyncio.run(journal.get_run(run.id))
    assert stored.status == RunStatus.CANCELED
    assert stored.on_complete_fired

    again = runner.invoke(app, ["workflow", "cancel", run.id])
    assert "already finished" in again.output

    missing = runner.invoke(app, ["workflow", "cancel", "missing-id"])
    assert missing.exit_code == 1


def test_pools_command(journal):
    result = CliRunner().invoke(app, ["pools"])
    assert result.exit_code == 0
    assert "high\t10" in result.output
    assert "default\t5" in result.output
    assert "low\t3" in result.output
