import threading
import time
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, call
from .aws.target_group import ArnLocks, TargetGroupClient, TargetGroupError
from .events import EventKind, InstanceCache, TargetGroupAssignment, new_event, snapshot_from_pod
from .reconciler import Reconciler, ReconcileState, group_ips_by_arn
from .workqueue import MAX_RETRIES, ItemExponentialFailureRateLimiter, RateLimitingQueue

ANNOTATION = "nlb-attacher.bird.co/target-groups"
START_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_pod(name="pod-a", ip="10.0.1.5", target_groups='[{"Arn":"arn:tg:1","PortName":"http"}]',
             deleting=False, created=None, namespace="default"):
    metadata = {
        'name': name,
        'namespace': namespace,
        'annotations': {} if target_groups is None else {ANNOTATION: target_groups},
        'creationTimestamp': (created or START_TIME + timedelta(minutes=5)).strftime('%Y-%m-%dT%H:%M:%SZ'),
    }
    if deleting:
        metadata['deletionTimestamp'] = '2024-05-01T13:00:00Z'
    return {'metadata': metadata, 'status': {'podIP': ip} if ip else {}}


class RecordingElbv2:
    """ELBv2 double that keeps registered targets and records calls that overlap on one ARN."""

    def __init__(self, delay=0.0):
        self.delay = delay
        self.targets = {}
        self.overlaps = []
        self.calls = []
        self._active = set()
        self._lock = threading.Lock()

    def _enter(self, arn):
        with self._lock:
            if arn in self._active:
                self.overlaps.append(arn)
            self._active.add(arn)

    def _exit(self, arn):
        with self._lock:
            self._active.discard(arn)

    def register_targets(self, TargetGroupArn, Targets):
        self._enter(TargetGroupArn)
        try:
            time.sleep(self.delay)
            with self._lock:
                self.calls.append(('register', TargetGroupArn, [t['Id'] for t in Targets]))
                self.targets.setdefault(TargetGroupArn, set()).update(t['Id'] for t in Targets)
        finally:
            self._exit(TargetGroupArn)
        return {}

    def deregister_targets(self, TargetGroupArn, Targets):
        self._enter(TargetGroupArn)
        try:
            time.sleep(self.delay)
            with self._lock:
                self.calls.append(('deregister', TargetGroupArn, [t['Id'] for t in Targets]))
                self.targets.setdefault(TargetGroupArn, set()).difference_update(t['Id'] for t in Targets)
        finally:
            self._exit(TargetGroupArn)
        return {}

    def describe_target_health(self, TargetGroupArn):
        self._enter(TargetGroupArn)
        try:
            with self._lock:
                registered = sorted(self.targets.get(TargetGroupArn, ()))
        finally:
            self._exit(TargetGroupArn)
        return {
            'TargetHealthDescriptions': [
                {'Target': {'Id': ip, 'Port': 80}, 'TargetHealth': {'State': 'healthy'}}
                for ip in registered
            ]
        }


class TestGroupIpsByArn(unittest.TestCase):
    def test_batches_and_sorts(self):
        assignments = [
            TargetGroupAssignment("arn:tg:1", "10.0.0.9"),
            TargetGroupAssignment("arn:tg:2", "10.0.0.1"),
            TargetGroupAssignment("arn:tg:1", "10.0.0.3"),
            TargetGroupAssignment("arn:tg:1", "10.0.0.9"),
        ]
        self.assertEqual(group_ips_by_arn(assignments), {
            "arn:tg:1": ["10.0.0.3", "10.0.0.9"],
            "arn:tg:2": ["10.0.0.1"],
        })


class TestProcessItem(unittest.TestCase):
    def setUp(self):
        self.cache = InstanceCache()
        self.client = MagicMock(spec=TargetGroupClient)
        self.reconciler = Reconciler(self.cache, self.client, ANNOTATION, start_time=START_TIME)

    def observe(self, pod, kind):
        snapshot = snapshot_from_pod(pod)
        if kind == EventKind.DELETE:
            self.cache.mark_deleted(snapshot.key, snapshot)
        else:
            self.cache.upsert(snapshot)
        return new_event(snapshot.key, kind)

    def test_create_registers_pod_ip(self):
        """Test pod-a with one target group is registered on create"""
        event = self.observe(make_pod(), EventKind.CREATE)

        self.assertEqual(self.reconciler.process_item(event), ReconcileState.APPLIED)
        self.client.register.assert_called_once_with("arn:tg:1", ["10.0.1.5"])
        self.client.deregister.assert_not_called()

    def test_create_registers_once_per_arn(self):
        event = self.observe(make_pod(target_groups='[{"Arn":"arn:tg:1"},{"Arn":"arn:tg:2"}]'), EventKind.CREATE)

        self.reconciler.process_item(event)

        self.assertEqual(self.client.register.call_args_list, [
            call("arn:tg:1", ["10.0.1.5"]),
            call("arn:tg:2", ["10.0.1.5"]),
        ])

    def test_create_without_ip_is_skipped(self):
        event = self.observe(make_pod(ip=""), EventKind.CREATE)

        self.assertEqual(self.reconciler.process_item(event), ReconcileState.SKIPPED)
        self.client.register.assert_not_called()

    def test_create_already_deleting_is_skipped(self):
        event = self.observe(make_pod(deleting=True), EventKind.CREATE)

        self.assertEqual(self.reconciler.process_item(event), ReconcileState.SKIPPED)
        self.client.register.assert_not_called()
        self.client.deregister.assert_not_called()

    def test_only_new_pods_skips_pods_older_than_start(self):
        self.reconciler.only_new_pods = True
        old = self.observe(make_pod(name="old", created=START_TIME - timedelta(hours=1)), EventKind.CREATE)
        new = self.observe(make_pod(name="new", created=START_TIME + timedelta(seconds=1)), EventKind.CREATE)

        self.assertEqual(self.reconciler.process_item(old), ReconcileState.SKIPPED)
        self.assertEqual(self.reconciler.process_item(new), ReconcileState.APPLIED)
        self.client.register.assert_called_once_with("arn:tg:1", ["10.0.1.5"])

    def test_only_new_pods_does_not_affect_updates(self):
        self.reconciler.only_new_pods = True
        event = self.observe(make_pod(created=START_TIME - timedelta(hours=1)), EventKind.UPDATE)

        self.assertEqual(self.reconciler.process_item(event), ReconcileState.APPLIED)

    def test_update_reasserts_registration(self):
        event = self.observe(make_pod(), EventKind.UPDATE)

        self.assertEqual(self.reconciler.process_item(event), ReconcileState.APPLIED)
        self.client.register.assert_called_once_with("arn:tg:1", ["10.0.1.5"])

    def test_update_without_ip_is_skipped(self):
        event = self.observe(make_pod(ip=None), EventKind.UPDATE)

        self.assertEqual(self.reconciler.process_item(event), ReconcileState.SKIPPED)
        self.client.register.assert_not_called()

    def test_update_marked_for_deletion_deregisters(self):
        event = self.observe(make_pod(deleting=True), EventKind.UPDATE)

        self.assertEqual(self.reconciler.process_item(event), ReconcileState.APPLIED)
        self.client.deregister.assert_called_once_with("arn:tg:1", "10.0.1.5")
        self.client.register.assert_not_called()

    def test_vanished_instance_is_skipped(self):
        event = new_event("default/gone", EventKind.UPDATE)

        self.assertEqual(self.reconciler.process_item(event), ReconcileState.SKIPPED)
        self.client.register.assert_not_called()

    def test_delete_deregisters_each_arn(self):
        """Test a delete with two known target groups deregisters the ip once per ARN"""
        pod = make_pod(target_groups='[{"Arn":"arn:tg:1"},{"Arn":"arn:tg:2"}]')
        self.observe(pod, EventKind.CREATE)
        event = self.observe(pod, EventKind.DELETE)

        self.assertEqual(self.reconciler.process_item(event), ReconcileState.APPLIED)
        self.assertEqual(self.client.deregister.call_args_list, [
            call("arn:tg:1", "10.0.1.5"),
            call("arn:tg:2", "10.0.1.5"),
        ])
        self.assertIsNone(self.cache.get_deleted("default/pod-a"))

    def test_delete_keeps_tombstone_when_deregister_fails(self):
        event = self.observe(make_pod(), EventKind.DELETE)
        self.client.deregister.side_effect = TargetGroupError("throttled", "arn:tg:1", "Throttling")

        with self.assertRaises(TargetGroupError):
            self.reconciler.process_item(event)
        self.assertIsNotNone(self.cache.get_deleted("default/pod-a"))

    def test_delete_with_malformed_annotation_drops_tombstone(self):
        event = self.observe(make_pod(target_groups='not json'), EventKind.DELETE)

        with self.assertLogs('nlb_attacher.reconciler', level='ERROR'):
            self.assertEqual(self.reconciler.process_item(event), ReconcileState.SKIPPED)
        self.client.deregister.assert_not_called()
        self.assertIsNone(self.cache.get_deleted("default/pod-a"))

    def test_delete_without_known_state_is_skipped(self):
        event = new_event("default/unknown", EventKind.DELETE)

        with self.assertLogs('nlb_attacher.reconciler', level='WARNING'):
            self.assertEqual(self.reconciler.process_item(event), ReconcileState.SKIPPED)
        self.client.deregister.assert_not_called()

    def test_malformed_annotation_is_skipped(self):
        event = self.observe(make_pod(target_groups='not json'), EventKind.CREATE)

        with self.assertLogs('nlb_attacher.reconciler', level='ERROR'):
            self.assertEqual(self.reconciler.process_item(event), ReconcileState.SKIPPED)
        self.client.register.assert_not_called()

    def test_pod_without_annotation_is_skipped(self):
        event = self.observe(make_pod(target_groups=None), EventKind.CREATE)

        self.assertEqual(self.reconciler.process_item(event), ReconcileState.SKIPPED)
        self.client.register.assert_not_called()

    def test_backend_failure_propagates(self):
        event = self.observe(make_pod(), EventKind.CREATE)
        self.client.register.side_effect = TargetGroupError("boom", "arn:tg:1", "TargetGroupNotFound")

        with self.assertRaises(TargetGroupError):
            self.reconciler.process_item(event)


class TestProcessNextItem(unittest.TestCase):
    def setUp(self):
        self.cache = InstanceCache()
        self.client = MagicMock(spec=TargetGroupClient)
        self.reconciler = Reconciler(self.cache, self.client, ANNOTATION, start_time=START_TIME)
        self.queue = RateLimitingQueue(ItemExponentialFailureRateLimiter(0, 0))

    def tearDown(self):
        self.queue.shut_down()

    def enqueue(self, pod, kind):
        snapshot = snapshot_from_pod(pod)
        self.cache.upsert(snapshot)
        event = new_event(snapshot.key, kind)
        self.queue.add(event)
        return event

    def drain(self):
        rounds = 0
        while len(self.queue):
            self.assertTrue(self.reconciler.process_next_item(self.queue))
            rounds += 1
        return rounds

    def test_burst_is_reconciled_once_with_latest_state(self):
        """Test Create, Update, Update before processing results in one reconciliation"""
        self.enqueue(make_pod(ip=""), EventKind.CREATE)
        self.enqueue(make_pod(ip="10.0.1.6"), EventKind.UPDATE)
        self.enqueue(make_pod(ip="10.0.1.7"), EventKind.UPDATE)

        self.assertEqual(self.drain(), 1)
        self.client.register.assert_called_once_with("arn:tg:1", ["10.0.1.7"])

    def test_success_forgets_retry_history(self):
        event = self.enqueue(make_pod(), EventKind.CREATE)
        self.client.register.side_effect = [TargetGroupError("throttled", "arn:tg:1", "Throttling"), None]

        self.assertEqual(self.drain(), 2)
        self.assertEqual(self.client.register.call_count, 2)
        self.assertEqual(self.queue.num_requeues(event), 0)

    def test_retries_are_exhausted_then_dropped(self):
        """Test an always-failing item is retried MAX_RETRIES times and then given up"""
        event = self.enqueue(make_pod(), EventKind.CREATE)
        self.client.register.side_effect = TargetGroupError("boom", "arn:tg:1", "TargetGroupNotFound")
        requeues_at_drop = []
        original_forget = self.queue.forget

        def recording_forget(item):
            requeues_at_drop.append(self.queue.num_requeues(item))
            original_forget(item)

        self.queue.forget = recording_forget

        self.assertEqual(self.drain(), MAX_RETRIES + 1)
        self.assertEqual(self.client.register.call_count, MAX_RETRIES + 1)
        self.assertEqual(requeues_at_drop, [MAX_RETRIES])
        self.assertEqual(self.queue.num_requeues(event), 0)

    def test_given_up_delete_drops_tombstone(self):
        """Test a delete that exhausts its retries does not leave its last known state behind"""
        snapshot = snapshot_from_pod(make_pod())
        self.cache.mark_deleted(snapshot.key, snapshot)
        self.queue.add(new_event(snapshot.key, EventKind.DELETE))
        self.client.deregister.side_effect = TargetGroupError("boom", "arn:tg:1", "TargetGroupNotFound")

        with self.assertLogs('nlb_attacher.reconciler', level='ERROR') as logs:
            self.assertEqual(self.drain(), MAX_RETRIES + 1)

        self.assertTrue(any("giving up" in line for line in logs.output))
        self.assertEqual(self.client.deregister.call_count, MAX_RETRIES + 1)
        self.assertIsNone(self.cache.get_deleted("default/pod-a"))

    def test_given_up_delete_keeps_newer_tombstone(self):
        first = snapshot_from_pod(make_pod())
        newer = snapshot_from_pod(make_pod(ip="10.0.1.9"))
        self.cache.mark_deleted(first.key, first)
        self.queue.add(new_event(first.key, EventKind.DELETE))
        attempts = []

        def failing_deregister(arn, ip):
            attempts.append(ip)
            if len(attempts) == MAX_RETRIES + 1:
                # The pod came back and was deleted again during the last attempt
                self.cache.mark_deleted(newer.key, newer)
            raise TargetGroupError("boom", arn, "TargetGroupNotFound")

        self.client.deregister.side_effect = failing_deregister

        with self.assertLogs('nlb_attacher.reconciler', level='ERROR'):
            self.assertEqual(self.drain(), MAX_RETRIES + 1)

        self.assertEqual(self.cache.get_deleted("default/pod-a"), newer)

    def test_malformed_annotation_is_not_retried(self):
        event = self.enqueue(make_pod(target_groups='[{"Arn": 42}]'), EventKind.CREATE)

        self.assertEqual(self.drain(), 1)
        self.assertEqual(self.queue.num_requeues(event), 0)
        self.assertEqual(len(self.queue), 0)
        self.client.register.assert_not_called()

    def test_unexpected_error_is_retried_not_raised(self):
        event = self.enqueue(make_pod(), EventKind.CREATE)
        self.client.register.side_effect = [RuntimeError("surprise"), None]

        self.assertEqual(self.drain(), 2)
        self.assertEqual(self.queue.num_requeues(event), 0)

    def test_run_worker_returns_after_shutdown(self):
        self.enqueue(make_pod(), EventKind.CREATE)
        worker = threading.Thread(target=self.reconciler.run_worker, args=(self.queue,))
        worker.start()
        time.sleep(0.1)

        self.queue.shut_down()
        worker.join(2)

        self.assertFalse(worker.is_alive())
        self.client.register.assert_called_once_with("arn:tg:1", ["10.0.1.5"])


class TestReconcilerAgainstBackend(unittest.TestCase):
    def setUp(self):
        self.elbv2 = RecordingElbv2()
        self.cache = InstanceCache()
        self.client = TargetGroupClient(self.elbv2, ArnLocks())
        self.reconciler = Reconciler(self.cache, self.client, ANNOTATION, start_time=START_TIME)

    def test_repeated_create_is_idempotent(self):
        snapshot = snapshot_from_pod(make_pod())
        self.cache.upsert(snapshot)
        event = new_event(snapshot.key, EventKind.CREATE)

        self.assertEqual(self.reconciler.process_item(event), ReconcileState.APPLIED)
        self.assertEqual(self.reconciler.process_item(event), ReconcileState.APPLIED)

        self.assertEqual(self.elbv2.targets, {"arn:tg:1": {"10.0.1.5"}})

    def test_calls_for_one_arn_never_overlap(self):
        """Test concurrent reconciliations of pods sharing an ARN are serialized"""
        self.elbv2.delay = 0.01
        pods = [
            make_pod(name=f"pod-{i}", ip=f"10.0.1.{i}", target_groups='[{"Arn":"arn:tg:shared"}]')
            for i in range(4)
        ]
        for pod in pods:
            self.cache.upsert(snapshot_from_pod(pod))

        def churn(pod):
            key = snapshot_from_pod(pod).key
            for _ in range(5):
                self.cache.upsert(snapshot_from_pod(pod))
                self.reconciler.process_item(new_event(key, EventKind.UPDATE))
                deleting = dict(pod, metadata=dict(pod['metadata'], deletionTimestamp='2024-05-01T13:00:00Z'))
                self.cache.upsert(snapshot_from_pod(deleting))
                self.reconciler.process_item(new_event(key, EventKind.UPDATE))

        threads = [threading.Thread(target=churn, args=(pod,)) for pod in pods]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)

        self.assertEqual(len(self.elbv2.calls), 40)
        self.assertEqual(self.elbv2.overlaps, [])


if __name__ == '__main__':
    unittest.main()
