import json
import logging
from typing import List

from .events import InstanceSnapshot, TargetGroupAssignment

logger = logging.getLogger(__name__)


class AnnotationDecodeError(ValueError):
    """The target group annotation of an instance could not be decoded."""

    def __init__(self, key: str, message: str):
        super().__init__(f"Invalid target group annotation on {key}: {message}")
        self.key = key


def decode_assignments(snapshot: InstanceSnapshot, annotation_key: str) -> List[TargetGroupAssignment]:
    """
    Decode the target groups an instance wants to be registered in.

    The annotation value is a JSON array such as
    ``[{"Arn": "arn:aws:elasticloadbalancing:...", "PortName": "http"}]``.
    PortName is optional and carried through untouched; the port comes from
    the target group itself.

    Args:
        snapshot: Instance to decode
        annotation_key: Annotation holding the target group list

    Returns:
        List of assignments, empty if the annotation is absent. Repeated ARNs
        are collapsed, first occurrence wins.

    Raises:
        AnnotationDecodeError: If the annotation value is malformed
    """
    raw = snapshot.annotations.get(annotation_key)
    if raw is None:
        return []

    try:
        entries = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise AnnotationDecodeError(snapshot.key, f"not valid JSON ({str(e)})")

    if not isinstance(entries, list):
        raise AnnotationDecodeError(snapshot.key, f"expected a JSON array, got {type(entries).__name__}")

    assignments = []
    seen_arns = set()
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise AnnotationDecodeError(snapshot.key, f"entry {index} is not an object")
        arn = entry.get('Arn')
        if not isinstance(arn, str) or not arn:
            raise AnnotationDecodeError(snapshot.key, f"entry {index} has no Arn")
        port_name = entry.get('PortName') or ""
        if not isinstance(port_name, str):
            raise AnnotationDecodeError(snapshot.key, f"entry {index} has a non-string PortName")

        if arn in seen_arns:
            logger.debug(f"Ignoring repeated target group {arn} on {snapshot.key}")
            continue
        seen_arns.add(arn)
        assignments.append(TargetGroupAssignment(
            target_group_arn=arn,
            pod_ip=snapshot.ip_address,
            port_name=port_name,
        ))

    return assignments
