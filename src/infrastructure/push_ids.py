"""
Chronological child keys for append-only collections.

A key is 8 characters of encoded millisecond timestamp followed by 12
random characters, drawn from an alphabet whose ASCII order matches its
value order.  Keys therefore sort by creation time, and keys generated in the
same millisecond by one generator increment the random suffix so they stay
strictly ordered.  Collisions across processes need 72 bits of identical
randomness in the same millisecond.
"""

from __future__ import annotations

import secrets
import threading
import time

PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"


class PushIdGenerator:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._last_ms = -1
        self._last_rand: list[int] = [0] * 12

    def next_id(self, now_ms: int | None = None) -> str:
        ms = int(time.time() * 1000) if now_ms is None else now_ms
        with self._lock:
            duplicate = ms == self._last_ms
            self._last_ms = ms

            ts_chars = []
            remaining = ms
            for _ in range(8):
                ts_chars.append(PUSH_CHARS[remaining % 64])
                remaining //= 64
            prefix = "".join(reversed(ts_chars))

            if not duplicate:
                self._last_rand = [secrets.randbelow(64) for _ in range(12)]
            else:
                # increment the random suffix as a base-64 number
                i = 11
                while i >= 0 and self._last_rand[i] == 63:
                    self._last_rand[i] = 0
                    i -= 1
                if i >= 0:
                    self._last_rand[i] += 1

            return prefix + "".join(PUSH_CHARS[d] for d in self._last_rand)


_generator = PushIdGenerator()


def push_id() -> str:
    """Module-level convenience wrapper around a shared generator."""
    return _generator.next_id()
