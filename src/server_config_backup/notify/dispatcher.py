"""Webhook notification dispatch with filtering and bounded retry."""
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from .. import __version__
from ..config.schema import HostIdentity, WebhookSettings
from ..errors import BackupError
from .events import WebhookEvent, connectivity_check

logger = logging.getLogger(__name__)

USER_AGENT = f"ServerBackup/{__version__}"


class WebhookRejected(Exception):
    """Endpoint answered with a non-2xx status."""

    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}")


RETRYABLE_EXCEPTIONS = (httpx.HTTPError, WebhookRejected)


class NotificationDispatcher:
    """
    Posts structured events to the configured webhook.

    Delivery is fire-and-forget: ``dispatch`` returns False on failure and
    never raises into the caller.
    """

    def __init__(
        self,
        settings: WebhookSettings,
        identity: HostIdentity,
        repo_url: Optional[str] = None,
        backup_user: Optional[str] = None,
        commit_lookup: Callable[[], Optional[str]] = lambda: None,
        client: Optional[httpx.Client] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize NotificationDispatcher.

        Args:
            settings: Webhook settings (enabled, url, allowed events, retry)
            identity: Host binding reported in every payload
            repo_url: Repository URL reported in metadata
            backup_user: Backup identity reported in metadata
            commit_lookup: Returns the latest commit id for metadata
            client: HTTP client (tests pass one with a mock transport)
            sleep: Sleep between attempts (replaced in tests)
        """
        self.settings = settings
        self.identity = identity
        self.repo_url = repo_url
        self.backup_user = backup_user
        self._commit_lookup = commit_lookup
        self._client = client
        self._sleep = sleep

    @property
    def active(self) -> bool:
        return self.settings.enabled and bool(self.settings.url)

    def is_allowed(self, event_type: str) -> bool:
        return event_type in self.settings.events

    def build_payload(self, event: WebhookEvent) -> dict:
        try:
            commit = self._commit_lookup()
        except BackupError as e:
            logger.debug(f"Commit lookup for webhook metadata failed: {e}")
            commit = None

        metadata = {
            "backup_system_version": __version__,
            "repo": self.repo_url or "unknown",
            "git_repo": self.repo_url or "unknown",
            "git_commit": commit or "unknown",
            "user": self.backup_user or "unknown",
        }
        metadata.update(event.metadata)

        return {
            "event": event.event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(timespec="seconds"),
            "hostname": self.identity.bound_hostname,
            "system_id": self.identity.system_id or "unknown",
            "severity": event.severity,
            "message": event.message,
            "data": event.data,
            "metadata": metadata,
        }

    def dispatch(self, event: WebhookEvent) -> bool:
        """
        Send ``event`` if notifications are enabled and the event is allowed.

        Returns:
            True if delivered, False if filtered out or delivery failed
        """
        if not self.active:
            logger.debug(f"Webhooks disabled, not sending {event.event_type}")
            return False
        if not self.is_allowed(event.event_type):
            logger.debug(f"Webhook event {event.event_type} not in enabled events")
            return False
        return self._deliver(event)

    def send_test(self) -> bool:
        """Send a test event, bypassing the event allow-list."""
        if not self.settings.url:
            logger.error("No webhook URL configured")
            return False
        return self._deliver(connectivity_check())

    def _deliver(self, event: WebhookEvent) -> bool:
        payload = self.build_payload(event)
        attempts = self.settings.retry_count

        client = self._client or httpx.Client()
        try:
            for attempt in Retrying(
                stop=stop_after_attempt(attempts),
                wait=wait_fixed(self.settings.retry_delay),
                retry=retry_if_exception_type(RETRYABLE_EXCEPTIONS),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                sleep=self._sleep,
                reraise=True,
            ):
                with attempt:
                    n = attempt.retry_state.attempt_number
                    logger.debug(f"Sending webhook (attempt {n}/{attempts}): {event.event_type}")
                    self._post(client, payload)
        except RETRYABLE_EXCEPTIONS as e:
            logger.error(f"Webhook failed after {attempts} attempts: {event.event_type} ({e})")
            return False
        finally:
            if self._client is None:
                client.close()

        logger.debug(f"Webhook sent successfully: {event.event_type}")
        return True

    def _post(self, client: httpx.Client, payload: dict) -> None:
        response = client.post(
            self.settings.url,
            json=payload,
            headers={"User-Agent": USER_AGENT},
            timeout=self.settings.timeout,
        )
        if not 200 <= response.status_code < 300:
            raise WebhookRejected(response.status_code)
