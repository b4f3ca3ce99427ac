import logging
from typing import Any, Dict, List

import kubernetes

logger = logging.getLogger(__name__)


def load_kube_config():
    """Load in-cluster configuration, falling back to kubeconfig for local development."""
    try:
        kubernetes.config.load_incluster_config()
    except kubernetes.config.ConfigException:
        kubernetes.config.load_kube_config()


def list_enabled_pods(namespace: str, label_selector: str) -> List[Dict[str, Any]]:
    """
    List the pods carrying the enable label.

    Args:
        namespace: Namespace to list, empty string for all namespaces
        label_selector: e.g. "nlb-attacher.bird.co/enabled=true"

    Returns:
        Pods as plain dicts in API (camelCase) form
    """
    api = kubernetes.client.CoreV1Api()
    if namespace:
        pods = api.list_namespaced_pod(namespace, label_selector=label_selector)
    else:
        pods = api.list_pod_for_all_namespaces(label_selector=label_selector)

    serializer = kubernetes.client.ApiClient()
    return [serializer.sanitize_for_serialization(pod) for pod in pods.items]
