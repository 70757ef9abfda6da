# services/point_values_service.py
"""
Process-wide point value table.

Reads are lock-free: the table is an immutable mapping whose reference is
swapped on update, so an event that takes one snapshot never sees a half
applied change. Admin writes are serialized and persisted before the swap.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal, InvalidOperation
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional

from app.core.errors import ValidationError
from app.core.logging import get_logger
from app.core.point_values import DEFAULT_POINT_VALUES, KNOWN_KINDS, ActionKind, kind_key
from services.ledger_store import LedgerStore, get_ledger_store

logger = get_logger()

PointValues = Mapping[str, Decimal]

_ZERO = Decimal(0)


def _to_amount(kind: str, amount: Any) -> Decimal:
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, TypeError, ValueError) as e:
        raise ValidationError(f"Invalid point value for {kind}: {amount!r}") from e
    if not value.is_finite():
        raise ValidationError(f"Point value for {kind} must be finite, got {amount!r}")
    if value < 0:
        raise ValidationError(
            f"Point value for {kind} must be >= 0, got {value}",
            details={"kind": kind, "amount": str(value)},
        )
    return value


def _validate_values(values: Mapping[Any, Any]) -> Dict[str, Decimal]:
    validated: Dict[str, Decimal] = {}
    for raw_kind, amount in values.items():
        kind = kind_key(raw_kind)
        if kind not in KNOWN_KINDS:
            raise ValidationError(f"Unknown action kind: {kind}", details={"kind": kind})
        validated[kind] = _to_amount(kind, amount)
    return validated


class PointValueTable:
    def __init__(
        self,
        store: Optional[LedgerStore] = None,
        values: Optional[Mapping[Any, Any]] = None,
    ) -> None:
        self._store = store
        merged = dict(DEFAULT_POINT_VALUES)
        merged.update(_validate_values(values or {}))
        self._values: PointValues = MappingProxyType(merged)
        self._write_lock = asyncio.Lock()

    def snapshot(self) -> PointValues:
        return self._values

    def get(self, kind: ActionKind | str) -> Decimal:
        """Configured amount, 0 for kinds the table does not know."""
        return self._values.get(kind_key(kind), _ZERO)

    async def load(self) -> PointValues:
        """
        Load-at-startup: stored values win over defaults, missing kinds are
        seeded with their defaults so the table always covers every known kind.
        """
        if self._store is None:
            return self._values
        async with self._write_lock:
            stored = await self._store.load_point_values()
            merged = dict(DEFAULT_POINT_VALUES)
            merged.update({k: v for k, v in stored.items() if k in KNOWN_KINDS})
            missing = {k: v for k, v in merged.items() if k not in stored}
            if missing:
                await self._store.save_point_values(missing, updated_by="system")
            self._values = MappingProxyType(merged)
        logger.info("point_values_loaded", kinds=len(merged), seeded=sorted(missing))
        return self._values

    async def set(self, kind: ActionKind | str, amount: Any, *, updated_by: Optional[str] = None) -> PointValues:
        return await self.replace({kind: amount}, updated_by=updated_by)

    async def replace(self, values: Mapping[Any, Any], *, updated_by: Optional[str] = None) -> PointValues:
        """
        Administrative update. All values are validated before anything is
        written; known kinds are never removed. Only events that start after
        the swap see the new amounts.
        """
        validated = _validate_values(values)
        if not validated:
            return self._values

        async with self._write_lock:
            current = self._values
            if self._store is not None:
                await self._store.save_point_values(validated, updated_by=updated_by)
            merged = dict(current)
            merged.update(validated)
            self._values = MappingProxyType(merged)

        changes = [
            f"{k}: {current.get(k, _ZERO)} -> {v}"
            for k, v in validated.items()
            if current.get(k, _ZERO) != v
        ]
        if changes:
            logger.info("point_value_updated", updated_by=updated_by, changes=changes)
        return self._values


_point_value_table: Optional[PointValueTable] = None


def get_point_value_table() -> PointValueTable:
    """Get or create the PointValueTable singleton."""
    global _point_value_table
    if _point_value_table is None:
        _point_value_table = PointValueTable(get_ledger_store())
    return _point_value_table
