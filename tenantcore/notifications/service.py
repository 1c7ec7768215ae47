"""
Fire-and-forget notification dispatch.

Sends run on a thread pool; failures are logged and counted, never retried
and never raised to the caller.
"""
import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional

from ..observability.metrics import notifications_counter
from .base import Notifier
from .providers.email import HttpEmailNotifier
from .providers.log import LoggingNotifier

logger = logging.getLogger(__name__)


def notifier_from_settings(settings) -> Notifier:
    if settings.email_api_url:
        return HttpEmailNotifier(
            settings.email_api_url, api_key=settings.email_api_key, sender=settings.email_from
        )
    return LoggingNotifier()


class NotificationDispatcher:
    def __init__(self, notifier: Notifier, max_workers: int = 4,
                 executor: Optional[ThreadPoolExecutor] = None):
        self.notifier = notifier
        self.executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="notify"
        )

    def send_invitation(self, email, token, expires_at) -> Future:
        return self._submit("invitation", self.notifier.send_invitation, email, token, expires_at)

    def send_role_changed(self, user_id, team_id, role) -> Future:
        return self._submit("role_changed", self.notifier.send_role_changed, user_id, team_id, role)

    def _submit(self, kind, func, *args) -> Future:
        return self.executor.submit(self._run, kind, func, *args)

    @staticmethod
    def _run(kind, func, *args) -> bool:
        try:
            func(*args)
        except Exception as e:
            notifications_counter.labels(kind=kind, status="failed").inc()
            logger.error(f"Notification {kind} failed: {e}")
            return False
        notifications_counter.labels(kind=kind, status="sent").inc()
        return True

    def shutdown(self, wait: bool = True):
        self.executor.shutdown(wait=wait)
