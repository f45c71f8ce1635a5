"""In-process tallies of coupon ledger outcomes.

Each ledger operation records one outcome (``created``, ``redeemed``,
``voided``, ``deactivated``, ``deleted``). Rejections are recorded as
``rejected`` qualified by the error code, e.g. ``rejected.coupon_expired``.
"""

from collections import Counter
from threading import Lock

_outcomes: Counter[str] = Counter()
_lock = Lock()


def _key(outcome: str, reason: str | None) -> str:
    return f"{outcome}.{reason}" if reason else outcome


def record(outcome: str, *, reason: str | None = None) -> None:
    with _lock:
        _outcomes[_key(outcome, reason)] += 1


def count(outcome: str, *, reason: str | None = None) -> int:
    with _lock:
        return _outcomes[_key(outcome, reason)]


def rejections() -> dict[str, int]:
    """Rejection tallies keyed by error code."""
    prefix = "rejected."
    with _lock:
        return {key[len(prefix):]: value for key, value in _outcomes.items() if key.startswith(prefix)}


def snapshot() -> dict[str, int]:
    with _lock:
        return dict(_outcomes)


def reset() -> None:
    with _lock:
        _outcomes.clear()
