import kopf
import logging
from typing import Any, Dict

from .config import Config, ENABLE_LABEL
from .controller import Controller
from .events import EventKind

logger = logging.getLogger(__name__)

# Watch event types; None is the initial listing when the watch starts
WATCH_EVENT_KINDS = {
    None: EventKind.CREATE,
    'ADDED': EventKind.CREATE,
    'MODIFIED': EventKind.UPDATE,
    'DELETED': EventKind.DELETE,
}


@kopf.on.startup()
def startup_fn(logger, memo: kopf.Memo, **kwargs):
    """Build the controller and start its workers, periodic tasks and health server."""
    try:
        config = Config.from_env()
    except ValueError as e:
        logger.error(f"Invalid configuration: {str(e)}")
        raise kopf.PermanentError(f"Invalid configuration: {str(e)}")

    try:
        controller = Controller(config)
        controller.start()
    except Exception as e:
        logger.error(f"Failed to start nlb-attacher: {str(e)}", exc_info=True)
        raise kopf.PermanentError("Failed to start nlb-attacher")

    memo.controller = controller
    logger.info(f"Watching pods labelled {config.label_selector}")


@kopf.on.cleanup()
def cleanup_fn(logger, memo: kopf.Memo, **kwargs):
    controller = memo.get('controller')
    if controller is not None:
        controller.stop()


@kopf.on.event('', 'v1', 'pods', labels={ENABLE_LABEL: 'true'})
def pod_event_fn(event: Dict[str, Any], memo: kopf.Memo, logger, **kwargs):
    """
    Feed pod watch events into the controller's cache and work queue.
    """
    controller = memo.get('controller')
    if controller is None:
        logger.warning("Controller is not running yet, dropping pod event")
        return

    kind = WATCH_EVENT_KINDS.get(event.get('type'))
    if kind is None:
        logger.debug(f"Ignoring watch event of type {event.get('type')}")
        return

    body = event.get('object')
    if not body or not body.get('metadata', {}).get('name'):
        logger.warning("Received pod event without an object, skipping")
        return

    controller.handle_pod_event(kind, body)
