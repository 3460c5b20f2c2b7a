from __future__ import annotations

import threading
import time

# 2024-01-01T00:00:00Z in milliseconds
AGORA_EPOCH_MS = 1704067200000

_WORKER_BITS = 10
_SEQUENCE_BITS = 12
_MAX_WORKER = (1 << _WORKER_BITS) - 1
_SEQUENCE_MASK = (1 << _SEQUENCE_BITS) - 1


class Snowflake:
    """Time-ordered 63-bit ids: milliseconds | worker | per-ms sequence."""

    def __init__(self, worker_id: int = 0) -> None:
        if not 0 <= worker_id <= _MAX_WORKER:
            raise ValueError(f"worker_id must be between 0 and {_MAX_WORKER}")
        self.worker_id = worker_id
        self._lock = threading.Lock()
        self._last_ms = -1
        self._sequence = 0

    @staticmethod
    def _millis() -> int:
        return int(time.time() * 1000)

    def generate(self) -> str:
        with self._lock:
            now = self._millis()
            # clock moved backwards: keep issuing from the last seen millisecond
            now = max(now, self._last_ms)
            if now == self._last_ms:
                self._sequence = (self._sequence + 1) & _SEQUENCE_MASK
                if self._sequence == 0:
                    while now <= self._last_ms:
                        now = self._millis()
            else:
                self._sequence = 0
            self._last_ms = now
            value = (
                ((now - AGORA_EPOCH_MS) << (_WORKER_BITS + _SEQUENCE_BITS))
                | (self.worker_id << _SEQUENCE_BITS)
                | self._sequence
            )
            return str(value)
