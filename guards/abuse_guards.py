"""
abuse_guards.py
----------------
Bounds extraction-API usage per user and per IP.

Two guards share one injected GuardStore:
    1. RateLimiter: fixed window, N actions per window per key. Keys are
       user ids and "ip_<address>".
    2. HashDeduplicator: rejects the same upload from the same user inside a
       short window, keyed on a cheap content hash.

The store is process-lifetime only. Every check-and-update happens under
the store's lock.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List

from config.config_loader import get_abuse_guard_config
from core.models import RateLimitResult
from core.utils import to_base36

logger = logging.getLogger(__name__)

Clock = Callable[[], float]


@dataclass
class RateLimitEntry:
    count: int
    reset_at_ms: int


@dataclass
class HashEntry:
    hash: str
    timestamp_ms: int


@dataclass
class GuardStore:
    """
    In-memory backing store for both guards. Pass one instance to every
    guard that should share limits; create a fresh one per test.
    """
    rate_limits: Dict[str, RateLimitEntry] = field(default_factory=dict)
    recent_hashes: Dict[str, List[HashEntry]] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def clear(self) -> None:
        with self.lock:
            self.rate_limits.clear()
            self.recent_hashes.clear()


def _now_ms(clock: Clock) -> int:
    return int(clock() * 1000)


class RateLimiter:
    """
    Usage:
        limiter = RateLimiter(store)
        result = limiter.check(user_id)
        if not result.allowed: ...
    """

    def __init__(self, store: GuardStore, clock: Clock = time.time):
        self.store = store
        self.clock = clock
        self.config = get_abuse_guard_config()
        self.max_actions = self.config["rate_limit_max"]
        self.window_ms = int(self.config["rate_limit_window_hours"] * 60 * 60 * 1000)

    def check(self, key: str) -> RateLimitResult:
        """
        Counts one action for key and reports whether it is allowed. The
        first action in a new or expired window opens a fresh window.
        """
        now = _now_ms(self.clock)
        with self.store.lock:
            entry = self.store.rate_limits.get(key)

            if entry is None or now >= entry.reset_at_ms:
                self.store.rate_limits[key] = RateLimitEntry(count=1, reset_at_ms=now + self.window_ms)
                return RateLimitResult(allowed=True, remaining=self.max_actions - 1, resets_in_ms=self.window_ms)

            if entry.count >= self.max_actions:
                logger.warning(f"Rate limit exceeded for key {key[:12]}...")
                return RateLimitResult(allowed=False, remaining=0, resets_in_ms=entry.reset_at_ms - now)

            entry.count += 1
            return RateLimitResult(
                allowed=True,
                remaining=self.max_actions - entry.count,
                resets_in_ms=entry.reset_at_ms - now,
            )

    def ip_key(self, ip_address: str) -> str:
        return f"{self.config['ip_key_prefix']}{ip_address}"


def content_hash(payload: str, sample_chars: int | None = None) -> str:
    """
    Cheap, non-cryptographic fingerprint of a base64 upload.

    Runs a 32-bit h*31 + c rolling hash over the first and last sample_chars
    characters, then appends the payload length to cut collisions between
    files that share a header and trailer.
    """
    if sample_chars is None:
        sample_chars = get_abuse_guard_config()["hash_sample_chars"]

    # Short payloads are sampled twice over, which is fine for a fingerprint.
    sample = payload[:sample_chars] + payload[-sample_chars:]
    h = 0
    for ch in sample:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return f"{to_base36(abs(h))}_{to_base36(len(payload))}"


class HashDeduplicator:
    """
    Check-and-insert duplicate upload detection per user.

    Usage:
        dedup = HashDeduplicator(store)
        if dedup.check_and_record(user_id, content_hash(file_data)): reject
    """

    def __init__(self, store: GuardStore, clock: Clock = time.time):
        self.store = store
        self.clock = clock
        self.window_ms = int(get_abuse_guard_config()["hash_window_minutes"] * 60 * 1000)

    def check_and_record(self, user_key: str, file_hash: str) -> bool:
        """
        Returns True if the same hash was seen for this user inside the
        window. Otherwise records it and returns False.
        """
        now = _now_ms(self.clock)
        with self.store.lock:
            recent = [
                h for h in self.store.recent_hashes.get(user_key, [])
                if now - h.timestamp_ms < self.window_ms
            ]
            if any(h.hash == file_hash for h in recent):
                self.store.recent_hashes[user_key] = recent
                return True

            recent.append(HashEntry(hash=file_hash, timestamp_ms=now))
            self.store.recent_hashes[user_key] = recent
            return False
