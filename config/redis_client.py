"""
Redis key layout and pub/sub channel names for the telemetry pipeline.

Usage:
    from config.redis_client import CacheKeys, CacheTTL, Channels

    await cache.set(CacheKeys.device_status("core-sw1"), data, ttl=CacheTTL.DEVICE_STATUS)
    await cache.publish(Channels.DEVICE_UPDATE, payload)
"""


# Cache key prefixes for organization
class CacheKeys:
    """Standard cache key templates."""

    # Last classified ping result (TTL: 1h)
    DEVICE_STATUS = "device:status:{device}"

    # Latest interface sample (TTL: 1h)
    INTERFACE_STATUS = "interface:status:{device}:{if_index}"

    # Latest wireless sample (TTL: 1h)
    WIRELESS_STATUS = "wireless:status:{device}"

    @classmethod
    def device_status(cls, device: str) -> str:
        return cls.DEVICE_STATUS.format(device=device)

    @classmethod
    def interface_status(cls, device: str, if_index: int) -> str:
        return cls.INTERFACE_STATUS.format(device=device, if_index=if_index)

    @classmethod
    def interface_pattern(cls, device: str) -> str:
        return cls.INTERFACE_STATUS.format(device=device, if_index="*")

    @classmethod
    def wireless_status(cls, device: str) -> str:
        return cls.WIRELESS_STATUS.format(device=device)


# Default TTLs in seconds
class CacheTTL:
    """Default TTL values for different cache types."""

    DEVICE_STATUS = 3600
    INTERFACE_STATUS = 3600
    WIRELESS_STATUS = 3600


class Channels:
    """Pub/sub channels shared by every ingesting instance."""

    DEVICE_UPDATE = "device:update"
    INTERFACE_UPDATE = "interface:update"
    WIRELESS_UPDATE = "wireless:update"
    ALERT_FLAPPING = "alert:flapping"
    SYSTEM_STATUS = "system:status"

    ALL = (
        DEVICE_UPDATE,
        INTERFACE_UPDATE,
        WIRELESS_UPDATE,
        ALERT_FLAPPING,
        SYSTEM_STATUS,
    )
