"""Cool-down gate for live DNS checks.

Each site may run one live DNS check per window. The gate is a timestamp
comparison against the persisted ``last_dns_check_at``; it needs no lock
and no in-memory counters, so any number of workers can share it through
the store.

Example:
    gate = check_gate(record.last_dns_check_at, window_seconds=60, now=now)
    if not gate.allowed:
        return gate.next_check_available  # tell the caller when to come back
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta


@dataclass(frozen=True)
class CheckGateResult:
    """Result of a cool-down check."""

    allowed: bool
    next_check_available: datetime | None
    seconds_remaining: float

    @property
    def retry_after(self) -> int:
        """Whole seconds to wait, rounded up, for Retry-After style hints."""
        if self.allowed:
            return 0
        whole = int(self.seconds_remaining)
        return whole + 1 if self.seconds_remaining > whole else whole


def check_gate(
    last_check_at: datetime | None,
    window_seconds: float,
    now: datetime,
) -> CheckGateResult:
    """Decide whether a live check may run now.

    Args:
        last_check_at: When the previous check started, if ever.
        window_seconds: Minimum spacing between checks.
        now: Current time (timezone-aware, same zone as last_check_at).

    Returns:
        CheckGateResult. When refused, ``next_check_available`` is exactly
        ``last_check_at + window``.
    """
    if last_check_at is None or window_seconds <= 0:
        return CheckGateResult(allowed=True, next_check_available=None, seconds_remaining=0.0)

    next_available = last_check_at + timedelta(seconds=window_seconds)
    if now >= next_available:
        return CheckGateResult(allowed=True, next_check_available=None, seconds_remaining=0.0)

    return CheckGateResult(
        allowed=False,
        next_check_available=next_available,
        seconds_remaining=(next_available - now).total_seconds(),
    )
