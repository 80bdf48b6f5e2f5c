from __future__ import annotations

from collections.abc import Callable
from typing import Any


def _import_psycopg() -> Any:
    try:
        import psycopg  # type: ignore
    except ImportError as exc:
        raise RuntimeError("psycopg is required for PostgreSQL backends; install psycopg[binary]") from exc
    return psycopg


class PostgresTxRunner:
    """Run callback logic in one PostgreSQL transaction with user session injection.

    When ``user_id`` is given it is exposed to row-level policies as
    ``app.current_user``; lookups that cross owners (invite tokens, linked
    nominee accounts) run without it.
    """

    def __init__(self, dsn: str) -> None:
        if not dsn.strip():
            raise ValueError("POSTGRES_DSN must not be empty")
        self._dsn = dsn.strip()

    def run_in_tx(
        self,
        *,
        user_id: str | None,
        fn: Callable[[Any], Any],
    ) -> Any:
        if user_id is not None and not user_id.strip():
            raise ValueError("user_id must not be empty")

        psycopg = _import_psycopg()
        with psycopg.connect(self._dsn) as conn:
            if user_id is not None:
                with conn.cursor() as cur:
                    cur.execute("SELECT set_config('app.current_user', %s, true)", (user_id,))
            result = fn(conn)
            conn.commit()
            return result
