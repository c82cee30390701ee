"""Best-effort webhook notifications for ramguard."""

import logging
import threading
from datetime import datetime

import httpx

logger = logging.getLogger(__name__)


class WebhookNotifier:
    """
    Posts ram_spike events to a webhook.

    Delivery happens on a daemon thread and every failure is swallowed, so
    a slow or broken endpoint never stalls a remediation cycle.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 5.0,
        client: httpx.Client | None = None,
        background: bool = True,
    ) -> None:
        self.url = url
        self._timeout = timeout
        self._client = client
        self._background = background

    @staticmethod
    def ram_spike_payload(percent: float, freed_mb: float, timestamp: datetime) -> dict:
        return {
            "event": "ram_spike",
            "ramPercent": percent,
            "freedMemoryMb": round(freed_mb),
            "timestamp": timestamp.isoformat(),
        }

    def notify_ram_spike(self, percent: float, freed_mb: float, timestamp: datetime) -> None:
        payload = self.ram_spike_payload(percent, freed_mb, timestamp)
        if not self._background:
            self._post(payload)
            return
        threading.Thread(
            target=self._post,
            args=(payload,),
            daemon=True,
            name="WebhookNotifier",
        ).start()

    def _post(self, payload: dict) -> bool:
        try:
            if self._client is not None:
                response = self._client.post(self.url, json=payload, timeout=self._timeout)
            else:
                response = httpx.post(self.url, json=payload, timeout=self._timeout)
            response.raise_for_status()
        except Exception as exc:
            logger.debug("Webhook delivery to %s failed: %s", self.url, exc)
            return False
        return True
