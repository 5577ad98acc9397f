"""Create the ``users`` and ``videos`` tables on the Supabase database.

The DDL is compiled from the SQLAlchemy models in ``src/models.py`` and run
with psycopg2 against the PostgreSQL database behind Supabase. The
``SUPABASE_DB_URL`` environment variable must hold the full connection
string.

Usage::

    export SUPABASE_DB_URL="postgresql://..."  # service role
    python scripts/create_supabase_tables.py
"""

from __future__ import annotations

import logging
import os
import sys

import psycopg2
from sqlalchemy.dialects import postgresql
from sqlalchemy.schema import CreateIndex, CreateTable

sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), "src"))

import settings  # noqa: E402
from models import Base  # noqa: E402

logger = logging.getLogger(__name__)

CREATE_VIDEO_BUCKET = """
insert into storage.buckets (id, name, public)
values (%s, %s, true)
on conflict (id) do nothing;
"""


def schema_statements() -> list[str]:
    """Return the DDL statements for every table and index, in order."""

    dialect = postgresql.dialect()
    statements: list[str] = []
    for table in Base.metadata.sorted_tables:
        statements.append(
            str(CreateTable(table, if_not_exists=True).compile(dialect=dialect))
        )
        for index in table.indexes:
            statements.append(
                str(CreateIndex(index, if_not_exists=True).compile(dialect=dialect))
            )
    return statements


def main() -> None:
    settings.configure_logging()
    db_url = settings.SUPABASE_DB_URL
    if not db_url:
        raise RuntimeError("SUPABASE_DB_URL is not set")
    bucket = settings.SUPABASE_VIDEO_BUCKET
    statements = schema_statements()
    conn = psycopg2.connect(db_url)
    try:
        with conn, conn.cursor() as cur:
            for statement in statements:
                cur.execute(statement)
            cur.execute(CREATE_VIDEO_BUCKET, (bucket, bucket))
    finally:
        conn.close()
    logger.info("Applied %d schema statements and bucket %s", len(statements), bucket)


if __name__ == "__main__":
    main()
