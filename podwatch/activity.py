"""Activity detection: events from comparing a node with its stored predecessor."""

from datetime import datetime

from podwatch.models import ActivityEvent, ActivityType, LifecycleState, NodeRecord

_STATE_EVENTS = {
    LifecycleState.ONLINE: ActivityType.NODE_ONLINE,
    LifecycleState.OFFLINE: ActivityType.NODE_OFFLINE,
    LifecycleState.SYNCING: ActivityType.NODE_SYNCING,
}


def _label(node: NodeRecord) -> str:
    if node.address:
        return node.address
    return f"{(node.identity or '')[:8]}..."


def _place(node: NodeRecord) -> str:
    if node.location is None:
        return "Unknown"
    return node.location.city or node.location.country or "Unknown"


def detect_activity(
    node: NodeRecord,
    previous: NodeRecord | None,
    timestamp: datetime,
) -> list[ActivityEvent]:
    """Return the events that explain how *node* differs from *previous*.

    Args:
        node: The node as reconciled this cycle.
        previous: The stored record for the same node, or ``None`` when
            the node has never been stored.
        timestamp: When the cycle ran.

    Returns:
        Zero or more events, in the order: new node, state change,
        credits earned, packets processed.
    """
    key = node.key
    if key is None:
        return []

    label = _label(node)
    events: list[ActivityEvent] = []

    def emit(kind: ActivityType, message: str, **data: object) -> None:
        events.append(
            ActivityEvent(
                node_key=key,
                type=kind,
                message=message,
                timestamp=timestamp,
                address=node.address,
                country_code=node.location.country_code if node.location else None,
                data=data,
            )
        )

    if previous is None:
        emit(ActivityType.NEW_NODE, f"{label} discovered ({_place(node)})", state=node.state.value)
        return events

    if previous.state is not node.state:
        kind = _STATE_EVENTS[node.state]
        if kind is ActivityType.NODE_ONLINE:
            message = f"{label} came online ({_place(node)})"
        elif kind is ActivityType.NODE_OFFLINE:
            message = f"{label} went offline"
        else:
            message = f"{label} is now syncing"
        emit(kind, message, old_state=previous.state.value, new_state=node.state.value)

    if node.credits is not None and previous.credits is not None and node.credits > previous.credits:
        earned = node.credits - previous.credits
        emit(
            ActivityType.CREDITS_EARNED,
            f"{label} earned {earned:.2f} credits",
            earned=earned,
            total=node.credits,
        )

    new_rx = node.metrics.packets_received or 0
    old_rx = previous.metrics.packets_received or 0
    new_tx = node.metrics.packets_sent or 0
    old_tx = previous.metrics.packets_sent or 0
    if new_rx > old_rx or new_tx > old_tx:
        # Counters reset on restart; only growth counts.
        rx_earned = max(new_rx - old_rx, 0)
        tx_earned = max(new_tx - old_tx, 0)
        emit(
            ActivityType.PACKETS_EARNED,
            f"{label} processed {rx_earned + tx_earned} packets",
            rx_earned=rx_earned,
            tx_earned=tx_earned,
            total_rx=new_rx,
            total_tx=new_tx,
        )

    return events
