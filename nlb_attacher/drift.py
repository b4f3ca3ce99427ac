import logging
import threading
from typing import Dict, List, Set

from .annotations import AnnotationDecodeError, decode_assignments
from .aws.target_group import TargetGroupClient, TargetGroupError
from .events import InstanceCache

logger = logging.getLogger(__name__)


class DriftCorrector:
    """
    Periodic sweep that re-registers instance IPs missing from their target groups.

    It only ever adds targets. Removing targets is left to the event-driven
    delete path, so this sweep heals lost watch events without claiming
    exclusive ownership of a target group.
    """

    def __init__(self, cache: InstanceCache, client: TargetGroupClient, annotation_key: str, interval: float = 60):
        self.cache = cache
        self.client = client
        self.annotation_key = annotation_key
        self.interval = interval

    def desired_membership(self) -> Dict[str, Set[str]]:
        desired: Dict[str, Set[str]] = {}
        for snapshot in self.cache.live_snapshots():
            if snapshot.deletion_requested or not snapshot.ip_address:
                continue
            try:
                assignments = decode_assignments(snapshot, self.annotation_key)
            except AnnotationDecodeError as e:
                logger.debug(f"Drift check ignores {snapshot.key}: {str(e)}")
                continue
            for assignment in assignments:
                desired.setdefault(assignment.target_group_arn, set()).add(assignment.pod_ip)
        return desired

    def correct_once(self) -> Dict[str, List[str]]:
        """
        Run one sweep over every target group that some instance wants to be in.

        Returns:
            Dict of target group ARN to the IPs that had to be registered
        """
        corrected = {}
        for arn, desired_ips in sorted(self.desired_membership().items()):
            try:
                # describe_health may back off on throttling, so it runs outside the ARN lock
                live_ips = {target.ip for target in self.client.describe_health(arn)}
                missing = desired_ips - live_ips
                if not missing:
                    logger.debug(f"Target group {arn} has all {len(desired_ips)} expected targets")
                    continue
                with self.client.locks.hold(arn):
                    # Instances deleted since the describe must not be brought back
                    missing = sorted(missing & self.desired_membership().get(arn, set()))
                    if not missing:
                        continue
                    logger.info(f"Target group {arn} is missing {missing}, registering")
                    self.client.register(arn, missing)
                corrected[arn] = missing
            except TargetGroupError as e:
                logger.error(f"Drift correction for {arn} failed: {str(e)}")
        return corrected

    def run(self, stop_event: threading.Event):
        logger.info(f"Starting drift correction with interval of {self.interval} seconds")
        while not stop_event.wait(self.interval):
            try:
                corrected = self.correct_once()
                if corrected:
                    logger.info(f"Drift correction registered targets in {len(corrected)} target groups")
            except Exception as e:
                logger.error(f"Error in drift correction: {str(e)}", exc_info=True)
        logger.info("Drift correction stopped")
