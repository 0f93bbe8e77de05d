"""
Event Deduplicator — TTL seen-set of webhook event signatures.

Providers retransmit status callbacks. A signature collapses every copy
of one logical event into the same key:

    sha256("{call_id}:{raw_status}:{bucket_ms}")

where bucket_ms is the receive time floored to a fixed window (5s by
default). Signatures are remembered for ttl_seconds (5 min by default)
regardless of the call's lifecycle.
"""
from __future__ import annotations

import hashlib
import structlog
from collections import OrderedDict
from datetime import datetime
from typing import Optional

from models.schemas import utcnow

logger = structlog.get_logger()


class EventDeduplicator:

    def __init__(self, bucket_seconds: float = 5.0, ttl_seconds: float = 300.0,
                 max_size: int = 10000):
        self.bucket_ms = int(bucket_seconds * 1000)
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._seen: OrderedDict[str, float] = OrderedDict()   # signature → marked at (epoch s)

    def signature(self, call_id: str, raw_status: str, now: Optional[datetime] = None) -> str:
        ts_ms = int((now or utcnow()).timestamp() * 1000)
        bucket = (ts_ms // self.bucket_ms) * self.bucket_ms
        return hashlib.sha256(f"{call_id}:{raw_status}:{bucket}".encode()).hexdigest()

    def seen(self, signature: str, now: Optional[datetime] = None) -> bool:
        marked_at = self._seen.get(signature)
        if marked_at is None:
            return False
        return (now or utcnow()).timestamp() - marked_at < self.ttl

    def mark(self, signature: str, now: Optional[datetime] = None) -> None:
        ts = (now or utcnow()).timestamp()
        self._prune(ts)
        self._seen[signature] = ts
        self._seen.move_to_end(signature)
        while len(self._seen) > self.max_size:
            evicted, _ = self._seen.popitem(last=False)
            logger.debug("dedup_evicted", signature=evicted[:12])

    def check_and_mark(self, call_id: str, raw_status: str,
                       now: Optional[datetime] = None) -> tuple[bool, str]:
        """Return (is_duplicate, signature); marks the signature when new."""
        sig = self.signature(call_id, raw_status, now)
        if self.seen(sig, now):
            return True, sig
        self.mark(sig, now)
        return False, sig

    def forget(self, signature: str) -> None:
        self._seen.pop(signature, None)

    def _prune(self, ts: float) -> None:
        cutoff = ts - self.ttl
        expired = [k for k, t in self._seen.items() if t < cutoff]
        for k in expired:
            del self._seen[k]

    def __len__(self) -> int:
        return len(self._seen)
