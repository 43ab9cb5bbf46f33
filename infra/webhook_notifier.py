"""Best-effort signed business webhooks."""

from __future__ import annotations

import hashlib
import logging
import os
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import requests

from infra.http_client import USER_AGENT
from infra.metrics import MetricsRecorder
from infra.signing import canonical_json, signed_headers

logger = logging.getLogger(__name__)


@dataclass
class WebhookConfig:
    enabled: bool
    default_url: Optional[str]
    secret: str
    timeout: float = 10.0
    dedupe_seconds: float = 300.0  # Suppress identical (order, event) pairs within 5m
    max_workers: int = 4


class WebhookNotifier:
    """
    Deliver `{event, timestamp, data}` to business webhook sinks.

    Delivery runs on a small thread pool so order handling never waits on a
    slow sink. Failures are logged and counted; nothing is raised and nothing
    is retried here.
    """

    def __init__(self, config: WebhookConfig, metrics: Optional[MetricsRecorder] = None) -> None:
        self._config = config
        self._enabled = bool(config.enabled and config.secret)
        if config.enabled and not config.secret:
            logger.warning("Webhooks enabled but no signing secret set; disabling webhooks")
            self._enabled = False
        self.metrics = metrics or MetricsRecorder(enabled=False)

        self._sent: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._pending: List[Future] = []
        self._executor = ThreadPoolExecutor(max_workers=config.max_workers, thread_name_prefix="webhook")

    @classmethod
    def from_config(
        cls,
        raw_config: Optional[Dict[str, Any]],
        metrics: Optional[MetricsRecorder] = None,
    ) -> "WebhookNotifier":
        raw_config = raw_config or {}

        default_url = raw_config.get("default_url")
        if default_url and "${" in default_url:
            default_url = os.path.expandvars(default_url)

        secret = os.getenv(raw_config.get("secret_env", "WEBHOOK_SECRET"), "")

        config = WebhookConfig(
            enabled=bool(raw_config.get("enabled", True)),
            default_url=default_url or None,
            secret=secret,
            timeout=float(raw_config.get("timeout_seconds", 10.0)),
            dedupe_seconds=float(raw_config.get("dedupe_seconds", 300.0)),
            max_workers=int(raw_config.get("max_workers", 4)),
        )
        return cls(config, metrics=metrics)

    def is_enabled(self) -> bool:
        return self._enabled

    def notify(self, event: str, data: Dict[str, Any], url: Optional[str] = None) -> Optional[Future]:
        """
        Queue one delivery. Returns the future, or None when nothing was queued.
        """
        if not self._enabled:
            return None
        target = url or self._config.default_url
        if not target:
            logger.debug("No webhook URL for %s; skipping", event)
            return None

        fingerprint = self._fingerprint(event, data)
        if self._seen_recently(fingerprint):
            self.metrics.record_webhook(event, "deduped")
            logger.debug("Webhook %s deduped (fingerprint=%s...)", event, fingerprint[:8])
            return None

        payload = {
            "event": event,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "data": data,
        }
        future = self._executor.submit(self.send, target, payload)
        with self._lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)
        return future

    def send(self, url: str, payload: Dict[str, Any]) -> bool:
        """Synchronous signed POST; True on a 2xx answer."""
        event = payload.get("event", "unknown")
        try:
            response = requests.post(
                url,
                data=canonical_json(payload),
                headers=signed_headers(payload, self._config.secret, **{"User-Agent": USER_AGENT}),
                timeout=self._config.timeout,
            )
            if response.status_code >= 300:
                raise requests.exceptions.HTTPError(f"HTTP {response.status_code}", response=response)
        except requests.exceptions.RequestException as exc:
            self.metrics.record_webhook(event, "failed")
            logger.warning("Webhook %s to %s failed: %s", event, url, exc)
            return False

        self.metrics.record_webhook(event, "delivered")
        logger.info("Webhook %s delivered to %s", event, url)
        return True

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait for queued deliveries."""
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def close(self) -> None:
        self.flush(timeout=self._config.timeout)
        self._executor.shutdown(wait=False)

    @staticmethod
    def _fingerprint(event: str, data: Dict[str, Any]) -> str:
        subject = data.get("orderId") or canonical_json(data).decode("utf-8")
        return hashlib.sha256(f"{event}|{subject}".encode("utf-8")).hexdigest()

    def _seen_recently(self, fingerprint: str) -> bool:
        """Fixed window from the first delivery of the same fingerprint."""
        now = time.monotonic()
        with self._lock:
            for key in [k for k, ts in self._sent.items() if now - ts > self._config.dedupe_seconds]:
                del self._sent[key]
            if fingerprint in self._sent:
                return True
            self._sent[fingerprint] = now
            return False
