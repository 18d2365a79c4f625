"""Owner liveness: the heartbeat table and the background emitter."""

from dbsemaphore.heartbeat.emitter import (
    DEFAULT_REGISTRY,
    EmitterRegistry,
    EmitterState,
    HeartbeatEmitter,
    default_owner_id,
)
from dbsemaphore.heartbeat.store import HeartbeatRecord, HeartbeatStore

__all__ = [
    "HeartbeatRecord",
    "HeartbeatStore",
    "EmitterState",
    "HeartbeatEmitter",
    "EmitterRegistry",
    "DEFAULT_REGISTRY",
    "default_owner_id",
]
