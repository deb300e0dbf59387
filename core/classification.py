"""
Ping classification.

    classify(latency, packet_loss, thresholds, alive=True) -> Status

Total over its inputs: every combination maps to exactly one of
up / degraded / down, and nothing here raises.
"""

from typing import Optional

from core.models import Status, Thresholds


def classify(
    latency: Optional[float],
    packet_loss: Optional[float],
    thresholds: Thresholds,
    alive: bool = True,
) -> Status:
    if not alive or latency is None:
        return Status.DOWN

    loss = packet_loss or 0.0

    if latency <= thresholds.good.latency and loss <= thresholds.good.packet_loss:
        return Status.UP
    if latency <= thresholds.degraded.latency and loss <= thresholds.degraded.packet_loss:
        return Status.DEGRADED
    return Status.DOWN
