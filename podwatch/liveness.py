"""Liveness classifier: gossip last-seen timestamp to lifecycle state."""

import logging
import time

from podwatch.models import LifecycleState

logger = logging.getLogger(__name__)

ONLINE_WINDOW_MS = 5 * 60 * 1000
SYNCING_WINDOW_MS = 60 * 60 * 1000

# Epoch values at or above this are already in milliseconds.
_MS_THRESHOLD = 1e12


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def normalize_timestamp(value: float | int | None) -> int | None:
    """Return *value* as epoch milliseconds, or ``None`` if unusable.

    Second- and millisecond-epoch inputs are told apart by magnitude.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        value = float(value)
    except (TypeError, ValueError):
        return None
    if value <= 0:
        return None
    if value >= _MS_THRESHOLD:
        return int(value)
    return int(value * 1000)


def classify(last_seen: float | int | None, now: int | None = None) -> LifecycleState:
    """Map a last-seen timestamp to a lifecycle state.

    Args:
        last_seen: Epoch seconds or milliseconds, or ``None``.
        now: Reference time in epoch milliseconds (default: current time).

    Returns:
        ``ONLINE`` when seen within 5 minutes, ``SYNCING`` within an hour,
        ``OFFLINE`` otherwise or when there is no timestamp.
    """
    seen_ms = normalize_timestamp(last_seen)
    if seen_ms is None:
        return LifecycleState.OFFLINE

    reference = now_ms() if now is None else now
    age = reference - seen_ms

    if age < ONLINE_WINDOW_MS:
        return LifecycleState.ONLINE
    if age < SYNCING_WINDOW_MS:
        return LifecycleState.SYNCING
    return LifecycleState.OFFLINE


def derive_state(
    last_seen: float | int | None,
    seen_in_gossip: bool,
    now: int | None = None,
) -> LifecycleState:
    """State from gossip alone: nodes gossip didn't return are offline."""
    if not seen_in_gossip:
        return LifecycleState.OFFLINE
    return classify(last_seen, now)


def promote(state: LifecycleState) -> LifecycleState:
    """State after the node answered a direct stats call: always online."""
    if state is not LifecycleState.ONLINE:
        logger.debug("Promoting %s node to online after a stats reply", state.value)
    return LifecycleState.ONLINE
