"""Completion/failure notifications.

One event per terminal job, fire-and-forget. A publish that still fails
after the bounded immediate retries is logged and dropped; it never rolls
back the job's terminal state.
"""

import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

from .models import NotifierConfig
from .queue.models import NotificationEvent

logger = logging.getLogger(__name__)


class Notifier(ABC):
    """Publishes NotificationEvents with a bounded retry policy."""

    def __init__(self, max_retries: int = 2, retry_delay_s: float = 0.2):
        self.max_retries = max_retries
        self.retry_delay_s = retry_delay_s

    @abstractmethod
    def _send(self, event: NotificationEvent) -> None:
        """Deliver one event; raise on failure."""

    def publish(self, event: NotificationEvent) -> bool:
        """Publish an event. Returns False when every attempt failed."""
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                self._send(event)
                return True
            except Exception as e:
                if attempt == attempts:
                    logger.error(
                        "Dropping %s event for job %s after %d attempts: %s",
                        event.status.value, event.job_id, attempts, e,
                    )
                    return False
                logger.warning(
                    "Publish attempt %d/%d for job %s failed: %s", attempt, attempts, event.job_id, e
                )
                time.sleep(self.retry_delay_s * attempt)
        return False

    @staticmethod
    def encode(event: NotificationEvent) -> bytes:
        return event.model_dump_json(exclude_none=True).encode("utf-8")


class LogNotifier(Notifier):
    """Writes events to the log. Default for local runs."""

    def _send(self, event: NotificationEvent) -> None:
        logger.info("media event: %s", self.encode(event).decode("utf-8"))


class PubSubNotifier(Notifier):
    """Publishes JSON events to a Google Cloud Pub/Sub topic."""

    def __init__(
        self,
        project_id: str,
        topic: str,
        publish_timeout_s: float = 10.0,
        max_retries: int = 2,
        publisher=None,
    ):
        super().__init__(max_retries=max_retries)
        if publisher is None:
            from google.cloud import pubsub_v1
            publisher = pubsub_v1.PublisherClient()
        self.publisher = publisher
        self.topic_path = publisher.topic_path(project_id, topic)
        self.publish_timeout_s = publish_timeout_s
        logger.info("Initialized Pub/Sub publisher for %s", self.topic_path)

    def _send(self, event: NotificationEvent) -> None:
        future = self.publisher.publish(
            self.topic_path,
            data=self.encode(event),
            job_id=event.job_id,
            status=event.status.value,
        )
        message_id = future.result(timeout=self.publish_timeout_s)
        logger.info("Published %s event for job %s (message_id=%s)", event.status.value, event.job_id, message_id)


def build_notifier(config: Optional[NotifierConfig] = None) -> Notifier:
    config = config or NotifierConfig()
    if config.backend == "pubsub":
        if not config.project_id:
            raise ValueError("notifier.project_id is required for the pubsub backend")
        return PubSubNotifier(
            config.project_id,
            config.topic,
            publish_timeout_s=config.publish_timeout_s,
            max_retries=config.max_retries,
        )
    return LogNotifier(max_retries=config.max_retries)
