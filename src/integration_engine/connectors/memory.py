"""In-process adapter for local development and loopback connectors.

Records are fed with `feed()`; pushed changes are kept in `pushed`.
"""
from __future__ import annotations
import threading
from datetime import datetime
from typing import Any, Dict, Optional
from integration_engine.connectors.base import ConnectorAdapter, RawRecord, Ack
from integration_engine.errors import TransientAdapterError
from integration_engine.models.enums import HealthStatus


class InMemoryAdapter(ConnectorAdapter):
    provider = "memory"

    def __init__(self, connector_id: str, config: Dict[str, Any]):
        super().__init__(connector_id, config)
        self._records: list[RawRecord] = []
        self.pushed: list[Dict[str, Any]] = []
        self.fail_next = 0  # number of upcoming calls that raise a transient error
        self.status = HealthStatus.HEALTHY
        self._lock = threading.Lock()

    def feed(self, *records: RawRecord):
        with self._lock:
            self._records.extend(records)

    def _maybe_fail(self):
        if self.fail_next > 0:
            self.fail_next -= 1
            raise TransientAdapterError(f"{self.connector_id}: simulated outage")

    def fetch_changes(self, since: Optional[datetime]) -> list[RawRecord]:
        with self._lock:
            self._maybe_fail()
            if since is None:
                return list(self._records)
            return [r for r in self._records if r.changed_at is None or r.changed_at > since]

    def push_change(self, record: Dict[str, Any]) -> Ack:
        with self._lock:
            self._maybe_fail()
            self.pushed.append(record)
            return Ack(accepted=True, external_id=str(record.get("id") or len(self.pushed)))

    def health(self) -> HealthStatus:
        return self.status
