"""psycopg3 access to the canonical identity tables.

Every repository and merge statement goes through :func:`execute_query` or
:func:`execute_update` on a caller-owned connection.  Transaction boundaries
belong to the caller (``conn.transaction()``), never to these helpers.
"""

import psycopg
from psycopg.rows import dict_row

from contactgraph.config import Settings


def get_connection(settings: Settings | None = None) -> psycopg.Connection:
    """Connect to the database holding the canonical company and people tables.

    Rows come back as dicts so repository code can map columns by name.
    """
    if settings is None:
        from contactgraph.config import get_settings
        settings = get_settings()

    return psycopg.connect(settings.database_url, row_factory=dict_row)


def execute_query(conn: psycopg.Connection, query: str, params: tuple = ()) -> list[dict]:
    """Run a lookup or ``RETURNING`` statement and return its rows."""
    with conn.cursor() as cur:
        cur.execute(query, params)
        if cur.description:
            return cur.fetchall()
        return []


def execute_update(conn: psycopg.Connection, query: str, params: tuple = ()) -> int:
    """Run a repoint, tombstone or delete and return how many rows it touched."""
    with conn.cursor() as cur:
        cur.execute(query, params)
        return cur.rowcount
