"""
Instance events, snapshots and the local instance cache.
"""

import enum
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, NamedTuple, Optional

logger = logging.getLogger(__name__)


class EventKind(enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class InstanceEvent(NamedTuple):
    """A lifecycle notification for one instance. Hashable, so it can sit in the work queue."""
    key: str
    kind: EventKind
    observed_at: datetime

    def __str__(self):
        return f"{self.kind.value} {self.key}"


class InstanceSnapshot(NamedTuple):
    key: str
    ip_address: str
    annotations: Dict[str, str]
    deletion_requested: bool
    creation_time: Optional[datetime]


class TargetGroupAssignment(NamedTuple):
    target_group_arn: str
    pod_ip: str
    port_name: str = ""


def new_event(key: str, kind: EventKind) -> InstanceEvent:
    return InstanceEvent(key=key, kind=kind, observed_at=datetime.now(timezone.utc))


def instance_key(namespace: Optional[str], name: str) -> str:
    """Build the namespace/name key used by the queue and the cache."""
    if namespace:
        return f"{namespace}/{name}"
    return name


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    text = str(value)
    if text.endswith('Z'):
        text = text[:-1] + '+00:00'
    parsed = datetime.fromisoformat(text)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def snapshot_from_pod(body: Dict[str, Any]) -> InstanceSnapshot:
    """
    Build an InstanceSnapshot from a pod manifest.

    Args:
        body: Pod as a dict in API (camelCase) form, e.g. a kopf body or a
            sanitized kubernetes.client.V1Pod

    Returns:
        InstanceSnapshot: the fields the reconciler needs
    """
    metadata = body.get('metadata') or {}
    status = body.get('status') or {}
    return InstanceSnapshot(
        key=instance_key(metadata.get('namespace'), metadata['name']),
        ip_address=status.get('podIP') or "",
        annotations=dict(metadata.get('annotations') or {}),
        deletion_requested=bool(metadata.get('deletionTimestamp')),
        creation_time=parse_timestamp(metadata.get('creationTimestamp')),
    )


class InstanceCache:
    """
    Thread-safe store of the latest known snapshot per instance key.

    Deleted instances are kept as tombstones until the delete has been
    reconciled, so the delete path can still see which target groups the
    instance belonged to.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._live: Dict[str, InstanceSnapshot] = {}
        self._tombstones: Dict[str, InstanceSnapshot] = {}

    def upsert(self, snapshot: InstanceSnapshot):
        with self._lock:
            self._live[snapshot.key] = snapshot
            self._tombstones.pop(snapshot.key, None)

    def mark_deleted(self, key: str, final_state: Optional[InstanceSnapshot] = None):
        """Move an instance to the tombstones, preferring the final state seen by the watch."""
        with self._lock:
            snapshot = final_state or self._live.get(key)
            self._live.pop(key, None)
            if snapshot is None:
                logger.warning(f"No known state for deleted instance {key}")
                return
            self._tombstones[key] = snapshot

    def get(self, key: str) -> Optional[InstanceSnapshot]:
        with self._lock:
            return self._live.get(key)

    def get_deleted(self, key: str) -> Optional[InstanceSnapshot]:
        with self._lock:
            return self._tombstones.get(key)

    def evict(self, key: str, snapshot: Optional[InstanceSnapshot] = None):
        """Drop a tombstone once its delete is reconciled. With snapshot given, only that exact one."""
        with self._lock:
            current = self._tombstones.get(key)
            if current is None:
                return
            if snapshot is None or current == snapshot:
                del self._tombstones[key]

    def live_snapshots(self) -> List[InstanceSnapshot]:
        with self._lock:
            return list(self._live.values())

    def __len__(self):
        with self._lock:
            return len(self._live)
