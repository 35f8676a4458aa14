"""
Outbound job notifications.

Every job that reaches a terminal state publishes exactly one
JobNotification. Subscribers are plain callables; a failing subscriber is
logged and never affects the job or the other subscribers.
"""

from threading import RLock
from typing import Callable, Optional

import msgspec
import requests
from loguru import logger

from hostengine.models.install_job import JobNotification
from hostengine.utils.retry import RetryConfig, request_with_retry

NotificationCallback = Callable[[JobNotification], None]


class JobNotifier:
    """
    Thread-safe fan-out of terminal job notifications.

    Examples:
        >>> notifier = JobNotifier()
        >>> unsubscribe = notifier.subscribe(print)
        >>> unsubscribe()
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._subscribers: list[NotificationCallback] = []

    def subscribe(self, callback: NotificationCallback) -> Callable[[], None]:
        """
        Register a callback for terminal job notifications.

        :param callback: Called with each JobNotification, on the job's worker thread
        :return: A function that removes the subscription
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, notification: JobNotification) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        logger.info(
            f"Job {notification.job_id} for app {notification.app_id} finished as "
            f"{notification.final_state.value} in {notification.duration_ms:.0f} ms"
        )
        for callback in subscribers:
            try:
                callback(notification)
            except Exception:
                logger.exception(
                    f"Notification subscriber {callback!r} failed for job {notification.job_id}"
                )


class WebhookNotifier:
    """
    Forwards JobNotifications as JSON to an HTTP endpoint, for the
    analytics and support services.
    """

    def __init__(self, url: str, retry_config: Optional[RetryConfig] = None) -> None:
        self.url = url
        self.retry_config = retry_config or RetryConfig(max_retries=2)

    def __call__(self, notification: JobNotification) -> None:
        try:
            request_with_retry(
                "POST",
                self.url,
                json=msgspec.to_builtins(notification),
                config=self.retry_config,
            )
        except requests.RequestException as e:
            logger.warning(
                f"Failed to deliver notification for job {notification.job_id} "
                f"to {self.url}: {e.__class__.__name__}"
            )
        else:
            logger.debug(f"Delivered notification for job {notification.job_id}")
