from .adapter import SignalChannelAdapter
from .redis_transport import (
    RedisCallHandle,
    RedisCallTransport,
    RedisSignalChannel,
    close_signal_redis,
    create_redis_transport,
    get_signal_redis,
)

__all__ = [
    "SignalChannelAdapter",
    "RedisCallHandle",
    "RedisCallTransport",
    "RedisSignalChannel",
    "close_signal_redis",
    "create_redis_transport",
    "get_signal_redis",
]
