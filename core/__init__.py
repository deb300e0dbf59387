"""
Core telemetry pipeline.

This package holds everything that runs independently of the HTTP layer:
- classification of ping readings
- the durable store and the batch writer in front of it
- the Redis cache manager and pub/sub on top of it
- flap detection and the metric ingestor that drives all of the above

Only leaf modules are re-exported here. Services are imported from their
own modules (``from core.batch_writer import BatchWriter``) so that
importing ``core.models`` from ``config`` never pulls in the ingestor.
"""

from .classification import classify
from .models import Device, Status, Thresholds
from .periodic import PeriodicTask
from .timestamps import epoch_ms, isonow

__all__ = [
    "classify",
    "Device",
    "epoch_ms",
    "isonow",
    "PeriodicTask",
    "Status",
    "Thresholds",
]
