"""
Main controller that owns the work queue, the reconciler workers and the
periodic tasks of the nlb-attacher.
"""

import logging
import threading
from typing import Any, Callable, Dict, List

from .aws.client import get_elbv2_client
from .aws.target_group import ArnLocks, TargetGroupClient
from .config import Config
from .drift import DriftCorrector
from .events import EventKind, InstanceCache, new_event, snapshot_from_pod
from .health.server import HealthServer
from .reconciler import Reconciler
from .workqueue import RateLimitingQueue, default_controller_rate_limiter

logger = logging.getLogger(__name__)

DEFAULT_STOP_TIMEOUT = 30  # seconds to wait for in-flight reconciliations


class Controller:

    def __init__(self, config: Config, elbv2: Any = None, pod_lister: Callable[[str, str], List[Dict[str, Any]]] = None):
        self.config = config
        self.cache = InstanceCache()
        self.queue = RateLimitingQueue(
            default_controller_rate_limiter(config.queue_base_delay, config.queue_max_delay)
        )
        self.locks = ArnLocks()
        if elbv2 is None:
            elbv2 = get_elbv2_client(region=config.region)
        self.client = TargetGroupClient(elbv2, self.locks)
        self.reconciler = Reconciler(
            self.cache,
            self.client,
            config.target_group_annotation,
            only_new_pods=config.only_new_pods,
        )
        self.drift = DriftCorrector(self.cache, self.client, config.target_group_annotation, config.drift_interval)
        self.pod_lister = pod_lister
        self.stop_event = threading.Event()
        self.health_server = None
        self._workers: List[threading.Thread] = []
        self._tasks: List[threading.Thread] = []

    def handle_pod_event(self, kind: EventKind, body: Dict[str, Any]):
        """Record the pod's latest state and queue it for reconciliation."""
        snapshot = snapshot_from_pod(body)
        if kind == EventKind.DELETE:
            self.cache.mark_deleted(snapshot.key, snapshot)
        else:
            self.cache.upsert(snapshot)
        logger.info(f"Processing {kind.value} to: {snapshot.key}")
        self.queue.add(new_event(snapshot.key, kind))

    def resync_once(self) -> int:
        """List every enabled pod and queue an update for each. Returns the number of pods seen."""
        pods = self.pod_lister(self.config.namespace, self.config.label_selector)
        for body in pods:
            self.handle_pod_event(EventKind.UPDATE, body)
        logger.debug(f"Resync queued {len(pods)} pods")
        return len(pods)

    def _run_resync(self):
        logger.info(f"Starting periodic resync with interval of {self.config.resync_interval} seconds")
        while not self.stop_event.wait(self.config.resync_interval):
            try:
                self.resync_once()
            except Exception as e:
                logger.error(f"Error in periodic resync: {str(e)}", exc_info=True)

    def start(self, serve_health: bool = True):
        if self.config.resync_interval > 0 and self.pod_lister is None:
            from . import kube
            kube.load_kube_config()
            self.pod_lister = kube.list_enabled_pods

        for index in range(self.config.worker_count):
            worker = threading.Thread(
                target=self.reconciler.run_worker,
                args=(self.queue,),
                name=f"reconciler-{index}",
                daemon=True,
            )
            worker.start()
            self._workers.append(worker)
        logger.info(f"Started {len(self._workers)} reconciler workers")

        if self.config.drift_interval > 0:
            self._start_task(self.drift.run, "drift-corrector", self.stop_event)
        if self.config.resync_interval > 0:
            self._start_task(self._run_resync, "resync")

        if serve_health:
            self.health_server = HealthServer(self.config.health_host, self.config.health_port, self.is_healthy)
            self.health_server.start()

        logger.info("nlb-attacher started and ready")

    def _start_task(self, target, name, *args):
        task = threading.Thread(target=target, args=args, name=name, daemon=True)
        task.start()
        self._tasks.append(task)
        logger.info(f"Started {name} thread")

    def is_healthy(self) -> bool:
        return not self.stop_event.is_set() and bool(self._workers) and all(w.is_alive() for w in self._workers)

    def stop(self, timeout: float = DEFAULT_STOP_TIMEOUT):
        """Stop accepting work, let in-flight reconciliations finish and wait for the threads."""
        logger.info("Shutting down nlb-attacher")
        self.stop_event.set()
        self.queue.shut_down()

        for thread in self._workers + self._tasks:
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(f"Thread {thread.name} did not stop within {timeout} seconds")

        if self.health_server is not None:
            self.health_server.shutdown()
            self.health_server = None

        logger.info("nlb-attacher successfully shut down")
