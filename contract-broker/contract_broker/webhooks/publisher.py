"""
Webhook publisher for broker events.

Notifies external systems (typically CI pipelines) when a consumer publishes
a new contract revision, so the provider build can verify it, and when a
provider publishes a verification result, so the consumer build can run
can-i-deploy. Deliveries run after the store write has committed, from a
background task of the HTTP layer; a failed delivery never undoes a write.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import Settings
from ..core.correlation import get_correlation_id
from ..core.metrics import BrokerMetrics
from ..core.schemas import ContractRef, VerificationRef

logger = logging.getLogger(__name__)

CONTRACT_CONTENT_CHANGED = "contract_content_changed"
PROVIDER_VERIFICATION_PUBLISHED = "provider_verification_published"


class WebhookPublisher:
    """
    Posts broker events as JSON to every configured URL.

    Each URL gets its own delivery; one failing endpoint does not stop the
    others.
    """

    def __init__(
        self,
        urls: List[str],
        timeout: int = 10,
        retries: int = 3,
        session: Optional[requests.Session] = None,
        metrics: Optional[BrokerMetrics] = None
    ):
        self.urls = list(urls)
        self.timeout = timeout
        self.session = session or self._create_http_session(retries)
        self.metrics = metrics

    @classmethod
    def from_settings(cls, settings: Settings, metrics: Optional[BrokerMetrics] = None) -> "WebhookPublisher":
        return cls(
            settings.webhook_urls(),
            timeout=settings.WEBHOOK_TIMEOUT,
            retries=settings.WEBHOOK_RETRIES,
            metrics=metrics
        )

    @property
    def enabled(self) -> bool:
        return bool(self.urls)

    @staticmethod
    def _create_http_session(retries: int) -> requests.Session:
        """Create HTTP session with retry configuration."""
        session = requests.Session()

        retry_strategy = Retry(
            total=retries,
            backoff_factor=1,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["POST"]
        )

        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def publish(self, event: str, payload: Dict[str, Any]) -> Dict[str, bool]:
        """
        Deliver one event to every configured URL.

        Returns:
            Mapping of URL to whether delivery succeeded
        """
        body = {
            "event": event,
            "sentAt": datetime.now(timezone.utc).isoformat(),
            "correlationId": get_correlation_id(),
            "payload": payload,
        }
        results: Dict[str, bool] = {}
        for url in self.urls:
            try:
                response = self.session.post(url, json=body, timeout=self.timeout)
                response.raise_for_status()
                results[url] = True
                logger.info(f"Delivered {event} webhook to {url}")
            except requests.RequestException as e:
                results[url] = False
                logger.warning(f"Webhook {event} delivery to {url} failed: {e}")
            if self.metrics:
                self.metrics.record_webhook(event, results[url])
        return results

    def contract_content_changed(self, ref: ContractRef) -> Dict[str, bool]:
        return self.publish(CONTRACT_CONTENT_CHANGED, {"contractRef": ref.model_dump(mode="json")})

    def verification_published(self, ref: VerificationRef) -> Dict[str, bool]:
        return self.publish(PROVIDER_VERIFICATION_PUBLISHED, {
            "contractRef": ref.contractRef.model_dump(mode="json"),
            "providerVersion": ref.providerVersion,
            "outcome": ref.outcome,
            "failureCount": len(ref.failures),
        })
