"""
Status snapshots emitted by the background worker.

On the wire a snapshot is a JSON object with LibreSpeed-compatible camelCase
keys::

    {"testState": 1, "dlStatus": 94.21, "ulStatus": 0.0, "pingStatus": 0.0,
     "jitterStatus": 0.0, "dlProgress": 0.4, "ulProgress": 0.0,
     "pingProgress": 0.0, "clientIp": "203.0.113.7", "testId": null}

``to_json`` always emits keys in the same order so two snapshots describing
the same state serialise to identical text.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, replace
from typing import Any, Dict, Mapping, Optional

from .state import TestPhase


_WIRE_KEYS = (
    ("test_state", "testState"),
    ("dl_status", "dlStatus"),
    ("ul_status", "ulStatus"),
    ("ping_status", "pingStatus"),
    ("jitter_status", "jitterStatus"),
    ("dl_progress", "dlProgress"),
    ("ul_progress", "ulProgress"),
    ("ping_progress", "pingProgress"),
    ("client_ip", "clientIp"),
    ("test_id", "testId"),
)


@dataclass(frozen=True)
class StatusSnapshot:
    """One reported state of an in-progress or finished run."""

    test_state: int = TestPhase.NOT_STARTED
    dl_status: float = 0.0       # Mbit/s
    ul_status: float = 0.0       # Mbit/s
    ping_status: float = 0.0     # ms
    jitter_status: float = 0.0   # ms
    dl_progress: float = 0.0
    ul_progress: float = 0.0
    ping_progress: float = 0.0
    client_ip: str = ""
    test_id: Optional[str] = None

    @property
    def phase(self) -> TestPhase:
        return TestPhase(self.test_state)

    def evolve(self, **changes: Any) -> StatusSnapshot:
        """Return a copy with *changes* applied."""
        return replace(self, **changes)

    # -- Serialisation ------------------------------------------------------

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StatusSnapshot:
        def _num(key: str) -> float:
            value = data.get(key)
            try:
                return float(value)
            except (TypeError, ValueError):
                return 0.0

        return cls(
            test_state=int(data.get("testState", TestPhase.NOT_STARTED)),
            dl_status=_num("dlStatus"),
            ul_status=_num("ulStatus"),
            ping_status=_num("pingStatus"),
            jitter_status=_num("jitterStatus"),
            dl_progress=_num("dlProgress"),
            ul_progress=_num("ulProgress"),
            ping_progress=_num("pingProgress"),
            client_ip=str(data.get("clientIp") or ""),
            test_id=data.get("testId"),
        )

    @classmethod
    def from_json(cls, text: str) -> StatusSnapshot:
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("status payload must be a JSON object")
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        result = {wire: getattr(self, attr) for attr, wire in _WIRE_KEYS}
        result["testState"] = int(self.test_state)
        return result

    def to_json(self) -> str:
        return json.dumps(self.to_dict())
