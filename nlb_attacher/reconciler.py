"""
Turns queued instance events into target group registrations.

Each event goes through FETCHED -> DECODED -> DIFFED and ends as APPLIED,
SKIPPED or FAILED. Only FAILED is retried by the work queue.
"""

import enum
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from .annotations import AnnotationDecodeError, decode_assignments
from .aws.target_group import TargetGroupClient, TargetGroupError
from .events import EventKind, InstanceCache, InstanceEvent, InstanceSnapshot, TargetGroupAssignment
from .workqueue import MAX_RETRIES, RateLimitingQueue

logger = logging.getLogger(__name__)


class ReconcileState(enum.Enum):
    FETCHED = "fetched"
    DECODED = "decoded"
    DIFFED = "diffed"
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


def group_ips_by_arn(assignments: List[TargetGroupAssignment]) -> Dict[str, List[str]]:
    """Batch assignments into one sorted, duplicate-free IP list per target group."""
    grouped: Dict[str, set] = {}
    for assignment in assignments:
        grouped.setdefault(assignment.target_group_arn, set()).add(assignment.pod_ip)
    return {arn: sorted(ips) for arn, ips in grouped.items()}


class Reconciler:

    def __init__(
        self,
        cache: InstanceCache,
        client: TargetGroupClient,
        annotation_key: str,
        only_new_pods: bool = False,
        start_time: datetime = None,
    ):
        self.cache = cache
        self.client = client
        self.annotation_key = annotation_key
        self.only_new_pods = only_new_pods
        self.start_time = start_time or datetime.now(timezone.utc)

    def process_item(self, event: InstanceEvent) -> ReconcileState:
        """
        Reconcile one event against the target groups.

        Args:
            event: The dequeued event

        Returns:
            ReconcileState.APPLIED or ReconcileState.SKIPPED

        Raises:
            TargetGroupError: If a backend call failed; the item should be retried
        """
        logger.debug(f"Handle event: {event}")

        if event.kind == EventKind.DELETE:
            snapshot = self.cache.get_deleted(event.key)
            if snapshot is None:
                logger.warning(f"Last known state of deleted instance {event.key} is gone, "
                               f"it may still be registered in its target groups")
                return ReconcileState.SKIPPED
        else:
            snapshot = self.cache.get(event.key)
            if snapshot is None:
                logger.info(f"Instance {event.key} is no longer in the cache, nothing to reconcile")
                return ReconcileState.SKIPPED

        try:
            assignments = decode_assignments(snapshot, self.annotation_key)
        except AnnotationDecodeError as e:
            logger.error(f"Skipping {event.key}: {str(e)}")
            if event.kind == EventKind.DELETE:
                self.cache.evict(event.key, snapshot)
            return ReconcileState.SKIPPED
        if not assignments:
            logger.debug(f"Instance {event.key} has no target groups, skipping")
            if event.kind == EventKind.DELETE:
                self.cache.evict(event.key, snapshot)
            return ReconcileState.SKIPPED

        action = self._diff(event, snapshot)
        if action is None:
            return ReconcileState.SKIPPED
        logger.debug(f"{event.key} reached {ReconcileState.DIFFED.value}, applying {action}")

        if action == "register":
            self._register(assignments)
        else:
            self._deregister(assignments)
            if event.kind == EventKind.DELETE:
                self.cache.evict(event.key, snapshot)

        return ReconcileState.APPLIED

    def _diff(self, event: InstanceEvent, snapshot: InstanceSnapshot):
        """Decide between "register", "deregister" and None (skip)."""
        if event.kind == EventKind.DELETE:
            if not snapshot.ip_address:
                logger.info(f"Deleted instance {snapshot.key} never had an ip address, nothing to detach")
                self.cache.evict(snapshot.key, snapshot)
                return None
            return "deregister"

        if event.kind == EventKind.CREATE:
            if snapshot.deletion_requested:
                logger.info(f"Discovered instance {snapshot.key} with deletion already requested. skipping...")
                return None
            if not snapshot.ip_address:
                logger.info(f"Received event for instance {snapshot.key} without an ip address yet. skipping...")
                return None
            if self.only_new_pods and snapshot.creation_time is not None and snapshot.creation_time <= self.start_time:
                logger.debug(f"Instance {snapshot.key} predates this process, skipping")
                return None
            return "register"

        if snapshot.deletion_requested:
            logger.info(f"Instance {snapshot.key} is marked for deletion, removing from target groups")
            return "deregister" if snapshot.ip_address else None
        if not snapshot.ip_address:
            logger.info(f"Instance {snapshot.key} has no ip address yet. skipping...")
            return None
        logger.info(f"Ensuring instance {snapshot.key} is attached to its target groups")
        return "register"

    def _register(self, assignments: List[TargetGroupAssignment]):
        for arn, ips in group_ips_by_arn(assignments).items():
            self.client.register(arn, ips)

    def _deregister(self, assignments: List[TargetGroupAssignment]):
        for arn, ips in group_ips_by_arn(assignments).items():
            for ip in ips:
                self.client.deregister(arn, ip)

    def process_next_item(self, queue: RateLimitingQueue) -> bool:
        """
        Take one event off the queue and reconcile it, applying the retry policy.

        Returns:
            bool: False once the queue has shut down, True otherwise
        """
        event, shutdown = queue.get()
        if shutdown:
            return False

        # The tombstone this attempt works from; dropped if the delete is given up
        tombstone = self.cache.get_deleted(event.key) if event.kind == EventKind.DELETE else None
        try:
            self.process_item(event)
        except Exception as e:
            self._handle_failure(queue, event, e, tombstone)
        else:
            queue.forget(event)
        finally:
            queue.done(event)

        return True

    def _handle_failure(
        self,
        queue: RateLimitingQueue,
        event: InstanceEvent,
        error: Exception,
        tombstone: Optional[InstanceSnapshot] = None,
    ):
        logger.debug(f"{event} ended as {ReconcileState.FAILED.value}")
        if not isinstance(error, TargetGroupError):
            logger.error(f"Unexpected error while processing {event}: {str(error)}", exc_info=True)
        if queue.num_requeues(event) < MAX_RETRIES:
            logger.error(f"Error processing {event} (will retry): {str(error)}")
            queue.add_rate_limited(event)
        else:
            logger.error(f"Error processing {event} (giving up after {MAX_RETRIES} retries): {str(error)}")
            queue.forget(event)
            if tombstone is not None:
                logger.warning(f"Dropping last known state of {event.key}, "
                               f"it may still be registered in its target groups")
                self.cache.evict(event.key, tombstone)

    def run_worker(self, queue: RateLimitingQueue):
        while self.process_next_item(queue):
            pass
        logger.info("Worker stopped, work queue is shut down")
