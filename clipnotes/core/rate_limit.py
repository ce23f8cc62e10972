"""
Rate-limit bookkeeping for the text-generation provider.

- parse_rate_limit_signal(): the one place that reads provider rate-limit
  metadata (headers, error text) and turns it into a RateLimitSignal.
- TokenBudget: per-worker estimate of the tokens left in the current
  one-minute window. Best effort only; the provider enforces the real limit.
"""

import re
import time
import logging
from dataclasses import dataclass
from typing import Callable, Mapping, Optional

from clipnotes.core.constants import (
    DEFAULT_RETRY_AFTER_SEC, BUDGET_WINDOW_SEC, WAIT_TICK_SEC,
)

logger = logging.getLogger(__name__)

_DURATION_RE = re.compile(
    r'(?:(?P<h>\d+(?:\.\d+)?)h)?'
    r'(?:(?P<m>\d+(?:\.\d+)?)m(?!s))?'
    r'(?:(?P<s>\d+(?:\.\d+)?)s)?'
    r'(?:(?P<ms>\d+(?:\.\d+)?)ms)?'
)
_TRY_AGAIN_RE = re.compile(r'try again in\s+([0-9hms.]+)', re.IGNORECASE)
_TOO_LARGE_RE = re.compile(r'request too large|too many tokens|maximum context length', re.IGNORECASE)
_LIMIT_RE = re.compile(r'Limit\s+(\d+)', re.IGNORECASE)
_USED_RE = re.compile(r'Used\s+(\d+)', re.IGNORECASE)
_REQUESTED_RE = re.compile(r'Requested\s+(\d+)', re.IGNORECASE)


@dataclass(frozen=True)
class RateLimitSignal:
    retry_after: float = DEFAULT_RETRY_AFTER_SEC
    request_too_large: bool = False
    remaining_budget_hint: Optional[int] = None


def parse_duration(value) -> float | None:
    """
    Parse a provider duration into seconds.
    Accepts plain numbers ("12", "0.5") and compound values
    ("1m30s", "6m0s", "2.5s", "450ms", "1h2m").
    """
    if value is None:
        return None
    text = str(value).strip().lower().rstrip('.')
    if not text:
        return None
    try:
        return max(0.0, float(text))
    except ValueError:
        pass

    m = _DURATION_RE.fullmatch(text)
    if not m or not any(m.groupdict().values()):
        return None
    parts = {k: float(v) for k, v in m.groupdict().items() if v}
    return (parts.get('h', 0.0) * 3600 + parts.get('m', 0.0) * 60
            + parts.get('s', 0.0) + parts.get('ms', 0.0) / 1000.0)


def _header(headers: Mapping | None, name: str):
    if not headers:
        return None
    try:
        return headers.get(name)
    except AttributeError:
        return None


def parse_rate_limit_signal(message: str = "", headers: Mapping | None = None) -> RateLimitSignal:
    """Turn a rate-limit response into a structured signal."""
    message = message or ""

    retry_after = None
    retry_ms = _header(headers, 'retry-after-ms')
    if retry_ms is not None:
        ms = parse_duration(retry_ms)
        retry_after = ms / 1000.0 if ms is not None else None
    for name in ('retry-after', 'x-ratelimit-reset-tokens', 'x-ratelimit-reset-requests'):
        if retry_after is None:
            retry_after = parse_duration(_header(headers, name))
    if retry_after is None:
        m = _TRY_AGAIN_RE.search(message)
        if m:
            retry_after = parse_duration(m.group(1))
    if retry_after is None:
        retry_after = DEFAULT_RETRY_AFTER_SEC

    limit_m = _LIMIT_RE.search(message)
    requested_m = _REQUESTED_RE.search(message)
    too_large = bool(_TOO_LARGE_RE.search(message))
    if limit_m and requested_m and int(requested_m.group(1)) > int(limit_m.group(1)):
        too_large = True

    remaining = None
    raw_remaining = _header(headers, 'x-ratelimit-remaining-tokens')
    if raw_remaining is not None:
        try:
            remaining = int(raw_remaining)
        except (TypeError, ValueError):
            remaining = None
    if remaining is None:
        used_m = _USED_RE.search(message)
        if limit_m and used_m:
            remaining = max(0, int(limit_m.group(1)) - int(used_m.group(1)))

    return RateLimitSignal(
        retry_after=retry_after,
        request_too_large=too_large,
        remaining_budget_hint=remaining,
    )


class TokenBudget:
    """Tokens this worker believes it may still spend in the current window."""

    def __init__(self, limit: int, window_sec: float = BUDGET_WINDOW_SEC,
                 clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window_sec = window_sec
        self._clock = clock
        self.remaining = limit
        self.window_started = clock()

    def reset(self):
        self.remaining = self.limit
        self.window_started = self._clock()

    def _refresh(self):
        if self._clock() - self.window_started >= self.window_sec:
            self.reset()

    def wait_needed(self, cost: int) -> float:
        """Seconds to wait before a call of this cost fits. 0 when it fits now."""
        self._refresh()
        if cost <= self.remaining:
            return 0.0
        elapsed = self._clock() - self.window_started
        return max(0.0, self.window_sec - elapsed)

    def spend(self, cost: int):
        self._refresh()
        self.remaining = max(0, self.remaining - cost)

    def apply_hint(self, remaining: int | None):
        if remaining is not None:
            self.remaining = min(self.remaining, max(0, remaining))


def sleep_with_ticks(seconds: float, on_tick: Callable[[], None] | None = None,
                     sleep: Callable[[float], None] = time.sleep,
                     tick_sec: float = WAIT_TICK_SEC):
    """Sleep in short slices, calling on_tick after each so observers see motion."""
    left = max(0.0, seconds)
    while left > 0:
        step = min(tick_sec, left)
        sleep(step)
        left -= step
        if on_tick:
            on_tick()
