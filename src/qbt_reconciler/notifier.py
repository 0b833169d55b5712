"""
Webhook notifications for run summaries and run failures
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional

import requests

from qbt_reconciler.__version__ import __version__
from qbt_reconciler.logging import get_logger

logger = get_logger(__name__)


class WebhookNotifier:
    """
    Posts JSON events to a webhook

    A missing URL disables notifications. Delivery failures are logged and
    never affect the run.
    """

    def __init__(self, webhook_url: Optional[str] = None, timeout: int = 10,
                 notify_on_no_changes: bool = False, session: Optional[requests.Session] = None):
        self.webhook_url = webhook_url or None
        self.timeout = timeout
        self.notify_on_no_changes = notify_on_no_changes
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config) -> 'WebhookNotifier':
        settings = config.get_notification_config()
        return cls(
            webhook_url=settings['webhook_url'],
            timeout=settings['timeout'],
            notify_on_no_changes=settings['notify_on_no_changes'],
        )

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    def _post(self, event: str, payload: Dict[str, Any]) -> bool:
        if not self.enabled:
            return False

        body = {
            'event': event,
            'source': f"qbt-reconciler/{__version__}",
            'timestamp': datetime.now(timezone.utc).isoformat(),
            **payload,
        }
        try:
            response = self.session.post(self.webhook_url, json=body, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning(f"Webhook notification '{event}' failed: {e}")
            return False

        logger.debug(f"Webhook notification '{event}' delivered")
        return True

    def notify_run(self, summary: Dict[str, Any]) -> bool:
        """
        Send a run summary

        Args:
            summary: Run summary (instance, applied, failed, dry_run, deleted, ...)

        Returns:
            True if delivered
        """
        if not summary.get('applied') and not summary.get('failed') and not summary.get('dry_run'):
            if not self.notify_on_no_changes:
                return False
        return self._post('run_completed', {'summary': summary})

    def notify_failure(self, instance: str, error: Exception) -> bool:
        """Send a run failure"""
        return self._post('run_failed', {
            'instance': instance,
            'error': type(error).__name__,
            'message': str(error),
        })
