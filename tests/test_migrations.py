from pathlib import Path

import allure
from sqlalchemy import text

from repo_review.storage.repository import ReviewRepository

pytestmark = [
    allure.epic("Review Pipeline"),
    allure.feature("Persistence"),
]


def test_alembic_schema_is_initialized_to_head(tmp_path: Path) -> None:
    repository = ReviewRepository(tmp_path / "migrations.db")
    repository.init_schema()

    with repository.engine.connect() as connection:
        version = connection.execute(
            text("SELECT version_num FROM alembic_version LIMIT 1"),
        ).scalar_one()
        tables = connection.execute(
            text(
                """
                SELECT name
                FROM sqlite_master
                WHERE type = 'table' AND name != 'alembic_version'
                ORDER BY name
                """,
            ),
        ).scalars().all()

    assert version == "20261019_0001"
    assert list(tables) == [
        "analyzers",
        "queue_entries",
        "queue_events",
        "review_findings",
        "review_jobs",
        "review_results",
        "subjects",
    ]
    repository.close()


def test_init_schema_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "twice.db"
    first = ReviewRepository(db_path)
    first.init_schema()
    first.close()

    second = ReviewRepository(db_path)
    second.init_schema()
    assert second.list_subjects() == []
    second.close()
