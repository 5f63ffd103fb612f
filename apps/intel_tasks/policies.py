"""
Rule due-policy payload.

The JSON payload stored on TaskRule.due_policy is parsed once here into a
DuePolicy; nothing else reads the raw dict. The quorum part is a tagged
union of QuorumCount, QuorumRatio and QuorumDefault.

Recognised keys: quorumCount (alias quorum), quorumRatio (alias ratio),
dueAtMinute, dueDayOfWeek, dueDayOfMonth. Unparseable values (including
non-finite ratios) are ignored, so the quorum falls back count -> ratio ->
default. Ratios above 1 are capped at 1.
"""

import math
from dataclasses import dataclass, field


@dataclass(frozen=True)
class QuorumCount:
    count: int

    def required(self, total):
        return self.count


@dataclass(frozen=True)
class QuorumRatio:
    ratio: float

    def required(self, total):
        return math.ceil(self.ratio * total)


@dataclass(frozen=True)
class QuorumDefault:
    """Simple majority: ceil(total / 2)."""

    def required(self, total):
        return math.ceil(total / 2)


@dataclass(frozen=True)
class DuePolicy:
    due_at_minute: int | None = None
    due_day_of_week: int | None = None
    due_day_of_month: int | None = None
    quorum: QuorumCount | QuorumRatio | QuorumDefault = field(default_factory=QuorumDefault)

    def required_completions(self, total):
        """Quorum size for a group of `total` tasks, clamped to [1, total]."""
        if total <= 0:
            return 0
        return min(max(1, self.quorum.required(total)), total)


def _first(payload, *keys):
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    return None


def _as_int(value):
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _as_ratio(value):
    if value is None or isinstance(value, bool):
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value) or value <= 0:
        return None
    return min(value, 1.0)


def parse_due_policy(payload):
    """Parse a rule's due_policy JSON (dict or None) into a DuePolicy."""
    if not isinstance(payload, dict):
        return DuePolicy()

    count = _as_int(_first(payload, 'quorumCount', 'quorum'))
    ratio = _as_ratio(_first(payload, 'quorumRatio', 'ratio'))
    if count is not None and count > 0:
        quorum = QuorumCount(count)
    elif ratio is not None:
        quorum = QuorumRatio(ratio)
    else:
        quorum = QuorumDefault()

    return DuePolicy(
        due_at_minute=_as_int(payload.get('dueAtMinute')),
        due_day_of_week=_as_int(payload.get('dueDayOfWeek')),
        due_day_of_month=_as_int(payload.get('dueDayOfMonth')),
        quorum=quorum,
    )
