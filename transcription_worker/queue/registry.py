"""Consumer registry keyed by worker mode.

Exactly one consumption mode runs per process, chosen once at startup
from WORKER_MODE.
"""

import os

from transcription_worker.queue.consumer import QueueConsumer
from transcription_worker.queue.interface import JobConsumer
from transcription_worker.queue.poller import PollConsumer
from transcription_worker.utils.errors import ConfigurationError

DEFAULT_MODE = "poll"

CONSUMERS: dict[str, type[JobConsumer]] = {
    "poll": PollConsumer,
    "queue": QueueConsumer,
}


def default_mode() -> str:
    return os.environ.get("WORKER_MODE", DEFAULT_MODE).strip().lower()


def get_consumer(mode: str | None = None, **kwargs: object) -> JobConsumer:
    """Create the consumer for a worker mode.

    Args:
        mode: "poll" or "queue". Defaults to WORKER_MODE, then "poll".
        **kwargs: Passed to the consumer constructor (store, coordinator, ...).

    Raises:
        ConfigurationError: If the mode is not registered.
    """
    mode = mode or default_mode()
    consumer_cls = CONSUMERS.get(mode)
    if not consumer_cls:
        available = ", ".join(sorted(CONSUMERS.keys()))
        raise ConfigurationError(
            f"Unknown worker mode: '{mode}'. Available: {available}",
            setting="WORKER_MODE",
        )
    return consumer_cls(**kwargs)
