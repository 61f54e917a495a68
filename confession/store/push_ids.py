"""Chronologically ordered push keys.

Keys are 20 characters: 8 encode the millisecond timestamp, 12 are random.
The alphabet is in ASCII order, so plain string comparison sorts keys by
creation time.  Keys generated within the same millisecond increment the
random part instead of drawing a new one, which keeps them strictly
increasing inside one process.
"""

from __future__ import annotations

import secrets
import time

PUSH_CHARS = "-0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ_abcdefghijklmnopqrstuvwxyz"

_last_push_time = 0
_last_rand: list[int] = [0] * 12


def generate_push_id(now_ms: int | None = None) -> str:
    """Return a new push key, strictly greater than the previous one."""
    global _last_push_time, _last_rand

    now = int(time.time() * 1000) if now_ms is None else now_ms
    # Never go backwards, even if the wall clock does
    now = max(now, _last_push_time)
    duplicate = now == _last_push_time
    _last_push_time = now

    ts_chars = []
    for _ in range(8):
        ts_chars.append(PUSH_CHARS[now % 64])
        now //= 64
    key = "".join(reversed(ts_chars))

    if not duplicate:
        _last_rand = [secrets.randbelow(64) for _ in range(12)]
    else:
        i = 11
        while i >= 0 and _last_rand[i] == 63:
            _last_rand[i] = 0
            i -= 1
        _last_rand[i] += 1

    return key + "".join(PUSH_CHARS[c] for c in _last_rand)
