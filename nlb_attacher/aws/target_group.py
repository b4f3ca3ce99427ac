from typing import Any, Dict, List, NamedTuple
import contextlib
import logging
import threading
from botocore.exceptions import BotoCoreError, ClientError
from .client import retry_aws_operation, error_code, THROTTLING_ERROR_CODES

logger = logging.getLogger(__name__)

# ELBv2 error codes
TARGET_GROUP_NOT_FOUND = 'TargetGroupNotFound'
INVALID_TARGET = 'InvalidTarget'
TOO_MANY_TARGETS = 'TooManyTargets'
TOO_MANY_REGISTRATIONS = 'TooManyRegistrationsForTargetId'
HEALTH_UNAVAILABLE = 'HealthUnavailable'

KNOWN_ERROR_CODES = frozenset([
    TARGET_GROUP_NOT_FOUND,
    INVALID_TARGET,
    TOO_MANY_TARGETS,
    TOO_MANY_REGISTRATIONS,
    HEALTH_UNAVAILABLE,
])


class TargetGroupError(Exception):
    """A register, deregister or describe call against a target group failed."""

    def __init__(self, message: str, arn: str, code: str = ""):
        super().__init__(message)
        self.arn = arn
        self.code = code


class TargetHealth(NamedTuple):
    ip: str
    state: str


class ArnLocks:
    """
    One re-entrant lock per target group ARN.

    Shared by every caller of the backend so that a register and a deregister
    for the same ARN are never in flight together, while unrelated ARNs
    proceed in parallel.
    """

    def __init__(self):
        self._registry_lock = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def lock_for(self, arn: str) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(arn)
            if lock is None:
                lock = threading.RLock()
                self._locks[arn] = lock
            return lock

    @contextlib.contextmanager
    def hold(self, arn: str):
        lock = self.lock_for(arn)
        with lock:
            yield


def classify_error(error: Exception, arn: str, operation: str) -> TargetGroupError:
    """
    Turn a botocore failure into a TargetGroupError and log it with its code.

    Args:
        error: The exception raised by the ELBv2 client
        arn: Target group the call was for
        operation: Name of the call, for the log line

    Returns:
        TargetGroupError: to be raised by the caller
    """
    if isinstance(error, ClientError):
        code = error_code(error)
        if code in THROTTLING_ERROR_CODES:
            logger.warning(f"{operation} on {arn} throttled ({code}): {str(error)}")
            return TargetGroupError(f"{operation} throttled: {str(error)}", arn, code)
        if code in KNOWN_ERROR_CODES:
            logger.error(f"{operation} on {arn} failed with {code}: {str(error)}")
        else:
            logger.error(f"{operation} on {arn} failed: {str(error)}")
        return TargetGroupError(f"{operation} failed with {code or 'unknown error'}: {str(error)}", arn, code)

    logger.error(f"{operation} on {arn} failed: {str(error)}")
    return TargetGroupError(f"{operation} failed: {str(error)}", arn)


class TargetGroupClient:
    """
    Idempotent register/deregister/describe calls against ELBv2 target groups.

    Every call holds the ARN's lock from ArnLocks for its duration.
    """

    def __init__(self, elbv2: Any, locks: ArnLocks = None):
        self.elbv2 = elbv2
        self.locks = locks or ArnLocks()

    def register(self, arn: str, ips: List[str]):
        """
        Register IP targets in a target group.

        Args:
            arn: ARN of the target group
            ips: IP addresses to register; an empty list is a no-op

        Raises:
            TargetGroupError: If the backend call fails
        """
        if not ips:
            return
        targets = [{'Id': ip} for ip in ips]
        for ip in ips:
            logger.debug(f"Attempting to attach: {ip}")

        with self.locks.hold(arn):
            try:
                response = self.elbv2.register_targets(TargetGroupArn=arn, Targets=targets)
            except (ClientError, BotoCoreError) as e:
                raise classify_error(e, arn, "RegisterTargets")

        logger.info(f"Successfully attached: {ips} to target group {arn}")
        logger.debug(response)

    def deregister(self, arn: str, ip: str):
        """
        Deregister one IP target from a target group.

        A target that is not registered (InvalidTarget) counts as already
        deregistered.

        Raises:
            TargetGroupError: If the backend call fails
        """
        with self.locks.hold(arn):
            try:
                response = self.elbv2.deregister_targets(TargetGroupArn=arn, Targets=[{'Id': ip}])
            except ClientError as e:
                if error_code(e) == INVALID_TARGET:
                    logger.info(f"{ip} is not registered in target group {arn} ({INVALID_TARGET}), nothing to detach")
                    return
                raise classify_error(e, arn, "DeregisterTargets")
            except BotoCoreError as e:
                raise classify_error(e, arn, "DeregisterTargets")

        logger.info(f"Successfully detached: {ip} from target group {arn}")
        logger.debug(response)

    def describe_health(self, arn: str) -> List[TargetHealth]:
        """
        List the targets currently registered in a target group.

        Returns:
            List of TargetHealth, one per registered target

        Raises:
            TargetGroupError: If the backend call fails
        """
        try:
            response = retry_aws_operation(self._describe_target_health, arn)
        except (ClientError, BotoCoreError) as e:
            raise classify_error(e, arn, "DescribeTargetHealth")

        return [
            TargetHealth(
                ip=description['Target']['Id'],
                state=description.get('TargetHealth', {}).get('State', 'unknown'),
            )
            for description in response.get('TargetHealthDescriptions', [])
        ]

    def _describe_target_health(self, arn: str) -> Dict[str, Any]:
        # Locked per attempt; retry backoff sleeps happen outside the lock
        with self.locks.hold(arn):
            return self.elbv2.describe_target_health(TargetGroupArn=arn)
