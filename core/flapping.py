"""
Interface flap detection.

Tracks every interface's recent readings and counts transitions (a status
change, or a speed change of at least ``min_speed_change_mbps``) inside a
sliding window. Each interface is either STABLE or FLAPPING:

    STABLE   -> FLAPPING  when in-window transitions reach change_threshold
    FLAPPING -> STABLE    when they fall back below it

A FlappingEvent is returned only on the STABLE -> FLAPPING crossing, and
only if ``alert_cooldown_seconds`` have passed since the interface's last
event. The detector is pure in-memory state; persisting events is the
caller's job.

All times are the readings' own epoch-ms timestamps, not wall clock.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, Dict, Optional, Tuple

from core.models import FlappingEvent, InterfaceSample

logger = logging.getLogger(__name__)

SPEED_CHANGE = "speed_change"
STATUS_CHANGE = "status_change"


class FlapState(str, Enum):
    STABLE = "stable"
    FLAPPING = "flapping"


@dataclass(frozen=True)
class Transition:
    timestamp: int
    type: str
    from_speed: int
    to_speed: int
    from_status: int
    to_status: int


@dataclass
class FlappingConfig:
    window_minutes: float = 10
    change_threshold: int = 5
    min_speed_change_mbps: int = 10
    history_size: int = 100
    alert_cooldown_seconds: float = 300

    @property
    def window_ms(self) -> int:
        return int(self.window_minutes * 60 * 1000)


@dataclass
class InterfaceHistory:
    readings: Deque[InterfaceSample]
    transitions: Deque[Transition]
    state: FlapState = FlapState.STABLE
    last_alert_at: Optional[int] = None
    total_transitions: int = field(default=0)

    @classmethod
    def empty(cls, size: int) -> "InterfaceHistory":
        return cls(readings=deque(maxlen=size), transitions=deque(maxlen=size))


class FlappingDetector:
    """Per-interface sliding-window flap detector."""

    def __init__(self, config: Optional[FlappingConfig] = None):
        self.config = config or FlappingConfig()
        self._histories: Dict[Tuple[str, int], InterfaceHistory] = {}
        self._events_emitted = 0

    @classmethod
    def from_settings(cls, settings) -> "FlappingDetector":
        return cls(FlappingConfig(
            window_minutes=settings.window_minutes,
            change_threshold=settings.change_threshold,
            min_speed_change_mbps=settings.min_speed_change_mbps,
            history_size=settings.history_size,
            alert_cooldown_seconds=settings.alert_cooldown_seconds,
        ))

    def check(
        self,
        device_id: str,
        if_index: int,
        if_name: str,
        sample: InterfaceSample,
    ) -> Optional[FlappingEvent]:
        """Record a reading. Returns an event only when the interface starts flapping."""
        cfg = self.config
        key = (device_id, if_index)
        history = self._histories.get(key)
        if history is None:
            history = self._histories[key] = InterfaceHistory.empty(cfg.history_size)

        previous = history.readings[-1] if history.readings else None
        history.readings.append(sample)

        if previous is not None:
            speed_changed = abs(previous.speed_mbps - sample.speed_mbps) >= cfg.min_speed_change_mbps
            status_changed = previous.oper_status != sample.oper_status
            if speed_changed or status_changed:
                history.transitions.append(Transition(
                    timestamp=sample.timestamp,
                    type=SPEED_CHANGE if speed_changed else STATUS_CHANGE,
                    from_speed=previous.speed_mbps,
                    to_speed=sample.speed_mbps,
                    from_status=previous.oper_status,
                    to_status=sample.oper_status,
                ))
                history.total_transitions += 1
                logger.debug(
                    f"Interface change on {device_id} {if_name}: "
                    f"speed {previous.speed_mbps}->{sample.speed_mbps}Mbps, "
                    f"status {previous.oper_status}->{sample.oper_status}"
                )

        self._evict(history, sample.timestamp)
        count = len(history.transitions)

        if history.state == FlapState.FLAPPING:
            if count < cfg.change_threshold:
                history.state = FlapState.STABLE
                logger.info(f"Interface {device_id} {if_name} stable again ({count} changes in window)")
            return None

        if count < cfg.change_threshold:
            return None

        history.state = FlapState.FLAPPING
        cooldown_ms = int(cfg.alert_cooldown_seconds * 1000)
        if history.last_alert_at is not None and sample.timestamp - history.last_alert_at < cooldown_ms:
            logger.debug(f"Flapping on {device_id} {if_name} within alert cooldown, suppressed")
            return None

        history.last_alert_at = sample.timestamp
        self._events_emitted += 1
        last = history.transitions[-1]
        speed_changes = sum(1 for t in history.transitions if t.type == SPEED_CHANGE)

        event = FlappingEvent(
            device_id=device_id,
            if_index=if_index,
            if_name=if_name,
            event_type=last.type,
            from_speed=last.from_speed,
            to_speed=last.to_speed,
            from_status=last.from_status,
            to_status=last.to_status,
            severity="critical" if count >= cfg.change_threshold * 2 else "warning",
            timestamp=sample.timestamp,
            total_changes=count,
            speed_changes=speed_changes,
            status_changes=count - speed_changes,
            window_minutes=cfg.window_minutes,
        )
        logger.warning(
            f"Flapping detected: {device_id} {if_name} - "
            f"{count} changes in {cfg.window_minutes} minutes"
        )
        return event

    def _evict(self, history: InterfaceHistory, now_ms: int):
        window_start = now_ms - self.config.window_ms
        while history.transitions and history.transitions[0].timestamp < window_start:
            history.transitions.popleft()

    # =========================================================================
    # Introspection / maintenance
    # =========================================================================

    def get_history(self, device_id: str, if_index: int) -> Optional[dict]:
        history = self._histories.get((device_id, if_index))
        if history is None:
            return None
        return {
            "state": history.state.value,
            "readings": [vars(r) for r in history.readings],
            "transitions": [vars(t) for t in history.transitions],
            "lastAlertAt": history.last_alert_at,
        }

    def clear_history(self, device_id: Optional[str] = None, if_index: Optional[int] = None) -> int:
        """Drop tracked state. Returns the number of interfaces cleared."""
        if device_id is None:
            cleared = len(self._histories)
            self._histories.clear()
        elif if_index is None:
            keys = [k for k in self._histories if k[0] == device_id]
            for key in keys:
                del self._histories[key]
            cleared = len(keys)
        else:
            cleared = 1 if self._histories.pop((device_id, if_index), None) else 0

        logger.info(f"Cleared flapping history for {cleared} interfaces")
        return cleared

    def update_config(self, **changes) -> FlappingConfig:
        """Change thresholds at runtime. Unknown keys raise ValueError."""
        for name, value in changes.items():
            if not hasattr(self.config, name) or name == "window_ms":
                raise ValueError(f"Unknown flapping setting: {name}")
            setattr(self.config, name, value)

        if "history_size" in changes:
            size = self.config.history_size
            for history in self._histories.values():
                history.readings = deque(history.readings, maxlen=size)
                history.transitions = deque(history.transitions, maxlen=size)

        logger.info(f"Flapping configuration updated: {self.get_config()}")
        return self.config

    def get_config(self) -> dict:
        cfg = self.config
        return {
            "windowMinutes": cfg.window_minutes,
            "changeThreshold": cfg.change_threshold,
            "minSpeedChangeMbps": cfg.min_speed_change_mbps,
            "historySize": cfg.history_size,
            "alertCooldownSeconds": cfg.alert_cooldown_seconds,
        }

    def get_stats(self) -> dict:
        interfaces = []
        for (device_id, if_index), history in self._histories.items():
            last = history.readings[-1] if history.readings else None
            interfaces.append({
                "deviceId": device_id,
                "ifIndex": if_index,
                "state": history.state.value,
                "readingsCount": len(history.readings),
                "totalChanges": history.total_transitions,
                "recentChanges": len(history.transitions),
                "isFlapping": history.state == FlapState.FLAPPING,
                "lastReading": vars(last) if last else None,
            })
        interfaces.sort(key=lambda i: i["recentChanges"], reverse=True)

        return {
            "trackedInterfaces": len(self._histories),
            "flappingInterfaces": sum(1 for i in interfaces if i["isFlapping"]),
            "eventsEmitted": self._events_emitted,
            "interfaces": interfaces,
        }
