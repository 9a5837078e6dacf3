"""level_schema_baseline

Baseline migration for the level subsystem tables.
For databases created before migrations were introduced, stamp this
revision instead of running it:
    alembic stamp 3c1f0a9d7e21

Revision ID: 3c1f0a9d7e21
Revises:
Create Date: 2026-10-18 09:12:40.381552

"""
from typing import Sequence, Union
from pathlib import Path

from alembic import op
import sqlalchemy as sa


revision: str = "3c1f0a9d7e21"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the level schema.

    schema.sql uses CREATE TABLE/INDEX IF NOT EXISTS, so this is safe to run
    against an existing database.
    """
    schema_path = Path(__file__).resolve().parents[2] / "competency_eval" / "db" / "schema.sql"
    schema_sql = schema_path.read_text()
    # op.execute runs one statement at a time
    for statement in schema_sql.split(";"):
        lines = [
            line for line in statement.splitlines()
            if line.strip() and not line.strip().startswith("--")
        ]
        cleaned = "\n".join(lines).strip()
        if cleaned:
            op.execute(sa.text(cleaned))


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    tables = [
        "confidence_signals",
        "practice_attempts",
        "competency_stats",
        "level_history",
        "level_profiles",
    ]
    for table in tables:
        op.drop_table(table)
