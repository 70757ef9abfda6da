"""
PostgresLedgerStore SQL shape tests, with asyncpg calls monkeypatched out.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import asyncpg
import pytest

from app.core.errors import ConflictError, PersistenceError
from app.models.gamification import ProgressStats, RewardGrant, RewardType
from services import ledger_store
from services.ledger_store import PostgresLedgerStore, _PostgresTransaction

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)


def _stats_row(**overrides: Any) -> Dict[str, Any]:
    row = ProgressStats(user_id="user-1", created_at=NOW, updated_at=NOW).model_dump()
    row.update(overrides)
    return row


class _Recorder:
    def __init__(self, result: Optional[Dict[str, Any]]) -> None:
        self.result = result
        self.calls: List[Any] = []

    async def __call__(self, conn: Any, sql: str, *args: Any, timeout: Optional[float] = None):
        self.calls.append((sql, args))
        return self.result


@pytest.mark.asyncio
async def test_load_stats_locks_row(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = _Recorder(_stats_row(version=3, lessons_completed=2))
    monkeypatch.setattr(ledger_store, "fetchrow_with_conn", recorder)

    stats = await _PostgresTransaction(conn=object()).load_stats("user-1")

    sql, args = recorder.calls[0]
    assert "FOR UPDATE" in sql
    assert args == ("user-1",)
    assert stats.version == 3
    assert stats.lessons_completed == 2


@pytest.mark.asyncio
async def test_first_save_inserts_on_conflict_do_nothing(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = _Recorder(_stats_row(version=1, experience=Decimal(1)))
    monkeypatch.setattr(ledger_store, "fetchrow_with_conn", recorder)

    saved = await _PostgresTransaction(conn=object()).save_stats(
        ProgressStats(user_id="user-1", experience=Decimal(1)), expected_version=0
    )

    sql, _ = recorder.calls[0]
    assert "INSERT INTO progress_stats" in sql
    assert "ON CONFLICT (user_id) DO NOTHING" in sql
    assert saved.version == 1


@pytest.mark.asyncio
async def test_update_is_conditional_on_version(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = _Recorder(None)
    monkeypatch.setattr(ledger_store, "fetchrow_with_conn", recorder)

    with pytest.raises(ConflictError):
        await _PostgresTransaction(conn=object()).save_stats(
            ProgressStats(user_id="user-1", version=4), expected_version=4
        )

    sql, args = recorder.calls[0]
    assert "AND version = $18" in sql
    assert args[-1] == 4


@pytest.mark.asyncio
async def test_grant_insert_is_upsert(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = _Recorder(None)
    monkeypatch.setattr(ledger_store, "fetchrow_with_conn", recorder)

    result = await _PostgresTransaction(conn=object()).insert_grant_if_absent(
        RewardGrant(user_id="user-1", reward_id="r1", earned_at=NOW)
    )

    sql, args = recorder.calls[0]
    assert "ON CONFLICT (user_id, reward_id) DO NOTHING" in sql
    assert args[:2] == ("user-1", "r1")
    assert result is None


@pytest.mark.asyncio
async def test_grant_update_checks_times_earned(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = _Recorder(None)
    monkeypatch.setattr(ledger_store, "fetchrow_with_conn", recorder)

    result = await _PostgresTransaction(conn=object()).update_grant(
        RewardGrant(user_id="user-1", reward_id="r1", earned_at=NOW, times_earned=3),
        expected_times_earned=2,
    )

    sql, args = recorder.calls[0]
    assert "AND times_earned = $8" in sql
    assert args[-1] == 2
    # milestone travels with every grant transition
    assert args[5] == 1
    assert result is None


def _failing_transaction(exc: BaseException):
    @asynccontextmanager
    async def _run_in_transaction(**kwargs: Any):
        raise exc
        yield  # pragma: no cover

    return _run_in_transaction


@pytest.mark.asyncio
async def test_serialization_failure_becomes_conflict(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        ledger_store, "run_in_transaction", _failing_transaction(asyncpg.exceptions.SerializationError("boom"))
    )

    with pytest.raises(ConflictError):
        async with PostgresLedgerStore().user_transaction("user-1"):
            pass


@pytest.mark.asyncio
async def test_connection_loss_becomes_retryable_persistence_error(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(ledger_store, "run_in_transaction", _failing_transaction(ConnectionRefusedError("down")))

    with pytest.raises(PersistenceError) as exc_info:
        async with PostgresLedgerStore().user_transaction("user-1"):
            pass
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_point_values_round_trip_through_rows(monkeypatch: pytest.MonkeyPatch) -> None:
    async def fake_fetch(sql: str, *args: Any, timeout: Optional[float] = None):
        assert "FROM point_values" in sql
        return [{"kind": "LESSON_COMPLETED", "amount": Decimal("1.50")}]

    monkeypatch.setattr(ledger_store, "fetch", fake_fetch)

    values = await PostgresLedgerStore().load_point_values()

    assert values == {"LESSON_COMPLETED": Decimal("1.5")}


@pytest.mark.asyncio
async def test_reward_counts_stored_as_jsonb(monkeypatch: pytest.MonkeyPatch) -> None:
    recorder = _Recorder(_stats_row(version=2, reward_counts='{"badge": 2, "milestone": 1}'))
    monkeypatch.setattr(ledger_store, "fetchrow_with_conn", recorder)

    saved = await _PostgresTransaction(conn=object()).save_stats(
        ProgressStats(user_id="user-1", version=1, reward_counts={RewardType.BADGE: 2, RewardType.MILESTONE: 1}),
        expected_version=1,
    )

    sql, args = recorder.calls[0]
    assert "reward_counts = $12::jsonb" in sql
    assert args[11] == '{"badge": 2, "milestone": 1}'
    assert saved.reward_counts == {RewardType.BADGE: 2, RewardType.MILESTONE: 1}
