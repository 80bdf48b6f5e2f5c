from __future__ import annotations

import json

import pytest

from records.repositories.nominees import _COLUMNS, InMemoryNomineesRepository, PostgresNomineesRepository


def _nominee(**overrides) -> dict:
    item = {column: None for column in _COLUMNS}
    item.update(
        {
            "nominee_id": "nom_repo_1",
            "user_id": "user_a",
            "full_name": "Anil Rao",
            "relationship": "parent",
            "date_of_birth": "1960-03-03",
            "share_percentage": 40.0,
            "is_active": True,
            "mobile_verified": False,
            "documents": [],
            "has_access": False,
            "access_level": "none",
            "invite_status": "not_invited",
            "can_view_categories": [],
            "created_at": "2026-01-01T00:00:00+00:00",
            "updated_at": "2026-01-01T00:00:00+00:00",
        }
    )
    item.update(overrides)
    return item


def test_inmemory_nominees_repository_scopes_and_filters():
    repo = InMemoryNomineesRepository({})
    repo.upsert(nominee=_nominee())
    repo.upsert(nominee=_nominee(nominee_id="nom_repo_2", is_active=False, created_at="2026-02-01T00:00:00+00:00"))

    assert repo.get(user_id="user_a", nominee_id="nom_repo_1") is not None
    assert repo.get(user_id="user_b", nominee_id="nom_repo_1") is None
    assert [n["nominee_id"] for n in repo.list(user_id="user_a")] == ["nom_repo_2", "nom_repo_1"]
    assert [n["nominee_id"] for n in repo.list(user_id="user_a", is_active=True)] == ["nom_repo_1"]
    assert [n["nominee_id"] for n in repo.list(user_id="user_a", is_active=False)] == ["nom_repo_2"]


def test_inmemory_invite_and_link_lookups_cross_owners():
    repo = InMemoryNomineesRepository({})
    repo.upsert(nominee=_nominee(invite_token="tok_1", invite_status="pending", has_access=True))
    repo.upsert(
        nominee=_nominee(
            nominee_id="nom_repo_2",
            user_id="user_c",
            invite_status="accepted",
            has_access=True,
            linked_user="user_b",
        )
    )
    repo.upsert(
        nominee=_nominee(
            nominee_id="nom_repo_3",
            user_id="user_d",
            invite_status="revoked",
            has_access=False,
            linked_user="user_b",
        )
    )

    assert repo.get_pending_by_invite_token(invite_token="tok_1")["nominee_id"] == "nom_repo_1"
    assert repo.get_pending_by_invite_token(invite_token="tok_missing") is None
    assert repo.get_linked(nominee_id="nom_repo_2", linked_user="user_b") is not None
    assert repo.get_linked(nominee_id="nom_repo_2", linked_user="user_x") is None
    assert [n["nominee_id"] for n in repo.list_linked(linked_user="user_b")] == ["nom_repo_2"]


def test_postgres_nominees_repository_rejects_invalid_table_names():
    class DummyRunner:
        def run_in_tx(self, *, user_id, fn):
            return fn(None)

    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresNomineesRepository(tx_runner=DummyRunner(), table_name="nominees where 1=1")


def test_postgres_nominees_repository_round_trip_shapes():
    statements: list[tuple[str, tuple | None]] = []
    stored = _nominee(share_percentage="40.00", is_active=1, has_access=0, can_view_categories=None)
    row = tuple(stored[column] for column in _COLUMNS)

    class FakeCursor:
        def __enter__(self):
            return self

        def __exit__(self, exc_type, exc, tb):
            return False

        def execute(self, query: str, params=None):
            statements.append((query, params))
            is_select = query.strip().lower().startswith("select")
            self._one = row if is_select else None
            self._many = [row] if is_select else []

        def fetchone(self):
            return self._one

        def fetchall(self):
            return self._many

    class FakeConnection:
        def cursor(self):
            return FakeCursor()

    class FakeRunner:
        def __init__(self):
            self.users: list[str | None] = []

        def run_in_tx(self, *, user_id, fn):
            self.users.append(user_id)
            return fn(FakeConnection())

    runner = FakeRunner()
    repo = PostgresNomineesRepository(tx_runner=runner)

    repo.upsert(nominee=_nominee(mobile_otp={"digest": "abc", "expires_at": "x"}, address={"city": "Pune"}))
    insert_sql, insert_params = statements[0]
    assert "INSERT INTO nominees" in insert_sql
    assert "ON CONFLICT(nominee_id)" in insert_sql
    assert json.loads(insert_params[_COLUMNS.index("mobile_otp")]) == {"digest": "abc", "expires_at": "x"}
    assert json.loads(insert_params[_COLUMNS.index("address")]) == {"city": "Pune"}
    assert runner.users[0] == "user_a"

    loaded = repo.get(user_id="user_a", nominee_id="nom_repo_1")
    assert loaded["share_percentage"] == 40.0
    assert loaded["is_active"] is True
    assert loaded["has_access"] is False
    assert loaded["can_view_categories"] == []

    active = repo.list(user_id="user_a", is_active=True)
    assert len(active) == 1
    assert statements[-1][1] == ("user_a", True)
    assert "ORDER BY created_at DESC" in statements[-1][0]

    repo.get_pending_by_invite_token(invite_token="tok_1")
    assert "invite_status = 'pending'" in statements[-1][0]
    assert runner.users[-1] is None

    repo.list_linked(linked_user="user_b")
    assert "linked_user = %s" in statements[-1][0]
    assert runner.users[-1] is None
