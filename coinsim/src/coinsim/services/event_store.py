"""Append-only audit journal for ledger events.

The journal receives one JSON object per line for every committed
ledger change (``trade_executed``, ``order_created``,
``order_cancelled``, ``order_executed``) and for every triggered order
the executor rejected (``order_failed``).  Decimals and datetimes are
written as strings so the file can be replayed without float drift.

The journal is optional.  Set ``EVENT_STORE_PATH`` to enable it; the
services receive ``None`` otherwise.  Writes happen after the SQL
transaction has committed, so a failing journal never undoes a trade:
the failure is logged and the ledger remains the source of truth.
"""

from __future__ import annotations

import asyncio
import datetime as dt
import json
import logging
import os
from decimal import Decimal
from typing import Any, Dict, List

logger = logging.getLogger(__name__)


def _encode(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (dt.datetime, dt.date)):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


class EventStore:
    """Append-only JSON Lines event journal."""

    def __init__(self, path: str) -> None:
        self.path = os.path.abspath(path)
        os.makedirs(os.path.dirname(self.path), exist_ok=True)
        self._lock = asyncio.Lock()

    async def log(self, event_type: str, data: Dict[str, Any]) -> None:
        """Append an event to the journal.

        Args:
            event_type: A string identifying the type of event.
            data: Event payload; decimals, datetimes and enums are stringified.
        """
        record = {
            "type": event_type,
            "logged_at": dt.datetime.now(dt.timezone.utc),
            "data": data,
        }
        line = json.dumps(record, default=_encode, ensure_ascii=False) + "\n"
        async with self._lock:
            await asyncio.to_thread(self._append_to_file, line)

    async def record(self, event_type: str, data: Dict[str, Any]) -> None:
        """Like :meth:`log` but never raises; used after a commit."""
        try:
            await self.log(event_type, data)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("Failed to journal %s event: %s", event_type, exc)

    async def read_all(self) -> List[Dict[str, Any]]:
        """Return every journaled event in write order."""
        async with self._lock:
            return await asyncio.to_thread(self._read_file)

    def _append_to_file(self, line: str) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line)

    def _read_file(self) -> List[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return []
        with open(self.path, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]
