# membership.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

ACTIVE_STATUSES = {"active", "trialing"}


# ---------------------------------------------------------
# SUBSCRIPTION-STATE RECORD
# ---------------------------------------------------------
def _to_iso(ts: Optional[datetime]) -> Optional[str]:
    if ts is None:
        return None
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _from_iso(value: Any) -> Optional[datetime]:
    """Raises ValueError on anything that is not an ISO timestamp or null."""
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"not a timestamp: {value!r}")
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _from_epoch(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        # unreadable epoch reads as absent
        return None


@dataclass(frozen=True)
class SubscriptionState:
    status: Optional[str]
    current_period_end: Optional[datetime] = None
    trial_end: Optional[datetime] = None

    def to_record(self) -> Dict[str, Any]:
        """Cache/response shape."""
        return {
            "status": self.status,
            "currentPeriodEnd": _to_iso(self.current_period_end),
            "trialEnd": _to_iso(self.trial_end),
        }

    @classmethod
    def from_record(cls, record: Any) -> Optional["SubscriptionState"]:
        """Malformed records come back as None, never as an error."""
        if not isinstance(record, dict):
            return None
        status = record.get("status")
        if status is not None and not isinstance(status, str):
            return None
        try:
            return cls(
                status=status,
                current_period_end=_from_iso(record.get("currentPeriodEnd")),
                trial_end=_from_iso(record.get("trialEnd")),
            )
        except (TypeError, ValueError):
            return None


def stripe_field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    try:
        return obj.get(name)
    except AttributeError:
        return getattr(obj, name, None)


def object_id(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    return stripe_field(value, "id") or None


def _period_end(sub: Any) -> Optional[datetime]:
    end = _from_epoch(stripe_field(sub, "current_period_end"))
    if end:
        return end
    # Newer API versions moved the period onto the subscription items
    items = stripe_field(stripe_field(sub, "items"), "data") or []
    ends = [_from_epoch(stripe_field(item, "current_period_end")) for item in items]
    ends = [e for e in ends if e]
    return max(ends) if ends else None


def normalize_subscription(sub: Any) -> Tuple[Optional[str], SubscriptionState]:
    """
    Projects a Stripe subscription object onto (customer_id, state).
    The customer id is None when the object does not reference one.
    """
    state = SubscriptionState(
        status=stripe_field(sub, "status"),
        current_period_end=_period_end(sub),
        trial_end=_from_epoch(stripe_field(sub, "trial_end")),
    )
    return object_id(stripe_field(sub, "customer")), state


# ---------------------------------------------------------
# ACCESS DECISION
# ---------------------------------------------------------
def evaluate_access(state: Optional[SubscriptionState], now: datetime) -> bool:
    if state is None:
        return False
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    status_ok = state.status in ACTIVE_STATUSES
    within_period = state.current_period_end is not None and state.current_period_end > now
    within_trial = state.trial_end is not None and state.trial_end > now
    return status_ok and (within_period or within_trial)


def access_payload(state: Optional[SubscriptionState], now: datetime) -> Dict[str, Any]:
    record = state.to_record() if state else {"status": None, "currentPeriodEnd": None, "trialEnd": None}
    return {"hasAccess": evaluate_access(state, now), **record}


def denied_payload() -> Dict[str, Any]:
    return access_payload(None, datetime.now(timezone.utc))


# ---------------------------------------------------------
# TAGGED LOOKUP RESULT
# ---------------------------------------------------------
FOUND = "found"
ABSENT = "absent"
FAILED = "failed"


@dataclass(frozen=True)
class Lookup:
    kind: str
    state: Optional[SubscriptionState] = None
    reason: Optional[str] = None

    @classmethod
    def found(cls, state: SubscriptionState) -> "Lookup":
        return cls(FOUND, state=state)

    @classmethod
    def absent(cls) -> "Lookup":
        return cls(ABSENT)

    @classmethod
    def failed(cls, reason: str) -> "Lookup":
        return cls(FAILED, reason=reason)

    @property
    def is_found(self) -> bool:
        return self.kind == FOUND
