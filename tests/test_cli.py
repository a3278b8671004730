from __future__ import annotations

import re
import shutil
import subprocess
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from repo_review.main import repo_review

pytestmark = [
    allure.epic("Review Pipeline"),
    allure.feature("CLI Ops"),
]


def _invoke(runner: CliRunner, *args: str) -> str:
    result = runner.invoke(repo_review, list(args), catch_exceptions=False)
    assert result.exit_code == 0, result.output
    return result.output


def _add_subject(runner: CliRunner, db_path: Path, repo_url: str) -> str:
    output = _invoke(
        runner,
        "subjects",
        "add",
        "--db-path",
        str(db_path),
        "--repo-url",
        repo_url,
    )
    match = re.search(r"subject_id=(\S+)", output)
    assert match is not None, output
    return match.group(1)


def test_cli_registers_subject_and_enqueues_job(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    subject_id = _add_subject(runner, db_path, "https://github.com/acme/widgets.git")
    listing = _invoke(runner, "subjects", "list", "--db-path", str(db_path))
    enqueued = _invoke(
        runner,
        "jobs",
        "enqueue",
        "--db-path",
        str(db_path),
        "--subject-id",
        subject_id,
        "--job-id",
        "job-cli",
        "--priority",
        "5",
    )
    status = _invoke(runner, "jobs", "status", "--db-path", str(db_path), "job-cli")
    stats = _invoke(runner, "queue", "stats", "--db-path", str(db_path))
    entries = _invoke(runner, "queue", "list", "--db-path", str(db_path))

    assert "Subjects: 1" in listing
    assert "acme/widgets" in listing
    assert f"Job enqueued: job_id=job-cli subject_id={subject_id} status=queued" in enqueued
    assert "Status: queued" in status
    assert "Queue: state=waiting attempt=0/3" in status
    assert "waiting=1 active=0 completed=0 failed=0 delayed=0 total=1" in stats
    assert "Queue entries: 1" in entries
    assert "job-cli state=waiting priority=5" in entries


def test_cli_rejects_unknown_subject_and_bad_url(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    missing = runner.invoke(
        repo_review,
        ["jobs", "enqueue", "--db-path", str(db_path), "--subject-id", "ghost"],
    )
    bad_url = runner.invoke(
        repo_review,
        ["subjects", "add", "--db-path", str(db_path), "--repo-url", "not-a-url"],
    )

    assert missing.exit_code == 1
    assert "Subject not found: ghost" in missing.output
    assert bad_url.exit_code == 1
    assert "Unsupported repository URL" in bad_url.output


def test_cli_reports_missing_job_and_queue_entry(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    status = _invoke(runner, "jobs", "status", "--db-path", str(db_path), "nope")
    inspect = _invoke(runner, "jobs", "inspect", "--db-path", str(db_path), "nope")
    removed = _invoke(runner, "queue", "remove", "--db-path", str(db_path), "nope")

    assert "Job not found: nope" in status
    assert "Job not found: nope" in inspect
    assert "Queue entry not found: nope" in removed


def test_cli_removes_waiting_entry_and_cleans_queue(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    subject_id = _add_subject(runner, db_path, "https://github.com/acme/widgets")
    _invoke(
        runner,
        "jobs",
        "enqueue",
        "--db-path",
        str(db_path),
        "--subject-id",
        subject_id,
        "--job-id",
        "job-rm",
    )

    removed = _invoke(runner, "queue", "remove", "--db-path", str(db_path), "job-rm")
    cleaned = _invoke(
        runner,
        "queue",
        "clean",
        "--db-path",
        str(db_path),
        "--completed-days",
        "0",
        "--failed-days",
        "0",
    )
    stats = _invoke(runner, "queue", "stats", "--db-path", str(db_path))

    assert "Queue entry removed: job-rm" in removed
    assert "Queue cleaned: completed_removed=0 failed_removed=0" in cleaned
    assert "total=0" in stats


def test_cli_worker_run_on_empty_queue(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"

    output = _invoke(
        CliRunner(),
        "worker",
        "run",
        "--db-path",
        str(db_path),
        "--backend",
        "echo",
        "--once",
    )

    assert "Worker summary: processed=0 succeeded=0 failed=0 retried=0" in output
    assert "idle_polls=1" in output


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_cli_worker_reviews_local_repository(tmp_path: Path) -> None:
    origin = tmp_path / "acme" / "widgets"
    (origin / "src").mkdir(parents=True)
    (origin / "src" / "app.py").write_text("value = eval('1')\n", encoding="utf-8")
    git = ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com"]
    subprocess.run([*git, "init", "-q", "-b", "main", str(origin)], check=True)
    subprocess.run([*git, "-C", str(origin), "add", "."], check=True)
    subprocess.run([*git, "-C", str(origin), "commit", "-q", "-m", "init"], check=True)
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    subject_id = _add_subject(runner, db_path, origin.as_uri())
    _invoke(
        runner,
        "jobs",
        "enqueue",
        "--db-path",
        str(db_path),
        "--subject-id",
        subject_id,
        "--job-id",
        "job-local",
    )

    summary = _invoke(
        runner,
        "worker",
        "run",
        "--db-path",
        str(db_path),
        "--backend",
        "echo",
        "--loop",
    )
    status = _invoke(runner, "jobs", "status", "--db-path", str(db_path), "job-local")
    inspect = _invoke(runner, "jobs", "inspect", "--db-path", str(db_path), "job-local")
    findings = _invoke(
        runner,
        "jobs",
        "findings",
        "--db-path",
        str(db_path),
        "job-local",
        "--severity",
        "high",
    )

    assert "processed=1 succeeded=1" in summary
    assert "Status: completed" in status
    assert "Progress: 100% (1/1 files)" in status
    assert "src/app.py (Python)" in inspect
    assert "Findings: 4" in findings
    assert "[high] bug src/app.py:1 Dynamic code evaluation" in findings
