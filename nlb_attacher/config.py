"""
Runtime configuration for the nlb-attacher, read from the environment.
"""

import os
from typing import Mapping

# Defaults
DEFAULT_ENABLE_LABEL = "nlb-attacher.bird.co/enabled"
DEFAULT_TARGET_GROUP_ANNOTATION = "nlb-attacher.bird.co/target-groups"
DEFAULT_WORKER_COUNT = 1
DEFAULT_DRIFT_INTERVAL = 60  # seconds, 0 disables the drift corrector
DEFAULT_RESYNC_INTERVAL = 60  # seconds, 0 disables the periodic resync
DEFAULT_QUEUE_BASE_DELAY = 0.005  # seconds
DEFAULT_QUEUE_MAX_DELAY = 1000  # seconds
DEFAULT_HEALTH_HOST = "0.0.0.0"
DEFAULT_HEALTH_PORT = 8080

# The label selector is needed when kopf registers the pod handlers at import time
ENABLE_LABEL = os.getenv('ENABLE_LABEL', DEFAULT_ENABLE_LABEL)

_TRUE_VALUES = ('1', 'true', 'yes', 'on')
_FALSE_VALUES = ('0', 'false', 'no', 'off', '')


def _parse_bool(name: str, value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"{name} must be a boolean, got {value!r}")


def _parse_number(name: str, value: str, cast, minimum):
    try:
        parsed = cast(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number, got {value!r}")
    if parsed < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got {parsed}")
    return parsed


class Config:
    """Settings shared by the controller, the workers and the periodic tasks."""

    def __init__(
        self,
        enable_label: str = DEFAULT_ENABLE_LABEL,
        target_group_annotation: str = DEFAULT_TARGET_GROUP_ANNOTATION,
        only_new_pods: bool = False,
        namespace: str = "",
        worker_count: int = DEFAULT_WORKER_COUNT,
        drift_interval: float = DEFAULT_DRIFT_INTERVAL,
        resync_interval: float = DEFAULT_RESYNC_INTERVAL,
        queue_base_delay: float = DEFAULT_QUEUE_BASE_DELAY,
        queue_max_delay: float = DEFAULT_QUEUE_MAX_DELAY,
        health_host: str = DEFAULT_HEALTH_HOST,
        health_port: int = DEFAULT_HEALTH_PORT,
        region: str = None,
    ):
        self.enable_label = enable_label
        self.target_group_annotation = target_group_annotation
        self.only_new_pods = only_new_pods
        self.namespace = namespace
        self.worker_count = worker_count
        self.drift_interval = drift_interval
        self.resync_interval = resync_interval
        self.queue_base_delay = queue_base_delay
        self.queue_max_delay = queue_max_delay
        self.health_host = health_host
        self.health_port = health_port
        self.region = region

    @property
    def label_selector(self) -> str:
        return f"{self.enable_label}=true"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = None) -> "Config":
        """
        Build a Config from environment variables.

        Args:
            environ: Mapping to read from, defaults to os.environ

        Returns:
            Config: the parsed configuration

        Raises:
            ValueError: If a variable has an invalid value
        """
        env = os.environ if environ is None else environ

        config = cls(
            enable_label=env.get('ENABLE_LABEL', DEFAULT_ENABLE_LABEL),
            target_group_annotation=env.get('TARGET_GROUP_ANNOTATION', DEFAULT_TARGET_GROUP_ANNOTATION),
            only_new_pods=_parse_bool('ONLY_NEW_PODS', env.get('ONLY_NEW_PODS', 'false')),
            namespace=env.get('WATCH_NAMESPACE', ''),
            worker_count=_parse_number('WORKER_COUNT', env.get('WORKER_COUNT', DEFAULT_WORKER_COUNT), int, 1),
            drift_interval=_parse_number('DRIFT_INTERVAL', env.get('DRIFT_INTERVAL', DEFAULT_DRIFT_INTERVAL), float, 0),
            resync_interval=_parse_number('RESYNC_INTERVAL', env.get('RESYNC_INTERVAL', DEFAULT_RESYNC_INTERVAL), float, 0),
            queue_base_delay=_parse_number('QUEUE_BASE_DELAY', env.get('QUEUE_BASE_DELAY', DEFAULT_QUEUE_BASE_DELAY), float, 0),
            queue_max_delay=_parse_number('QUEUE_MAX_DELAY', env.get('QUEUE_MAX_DELAY', DEFAULT_QUEUE_MAX_DELAY), float, 0),
            health_host=env.get('HEALTH_HOST', DEFAULT_HEALTH_HOST),
            health_port=_parse_number('HEALTH_PORT', env.get('HEALTH_PORT', DEFAULT_HEALTH_PORT), int, 0),
            region=env.get('AWS_DEFAULT_REGION') or None,
        )

        if not config.enable_label:
            raise ValueError("ENABLE_LABEL must not be empty")
        if not config.target_group_annotation:
            raise ValueError("TARGET_GROUP_ANNOTATION must not be empty")
        if config.queue_max_delay < config.queue_base_delay:
            raise ValueError("QUEUE_MAX_DELAY must be >= QUEUE_BASE_DELAY")

        return config
