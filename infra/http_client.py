"""
rampsettle Infrastructure: JSON HTTP helper

Shared request path for every collaborator client: explicit per-call
timeouts, bounded retries on 429/5xx/network errors, latency metrics, and a
single error type (UpstreamUnavailable) for callers to handle.
"""

import logging
import random
import time
from typing import Any, Dict, Optional

import requests

from core.exceptions import UpstreamUnavailable
from infra.metrics import MetricsRecorder

logger = logging.getLogger(__name__)

USER_AGENT = "rampsettle/1.0"


class JsonHttpClient:
    """Base class for collaborator clients speaking JSON over HTTP."""

    def __init__(self, name: str, metrics: Optional[MetricsRecorder] = None):
        self.name = name
        self.metrics = metrics or MetricsRecorder(enabled=False)

    def request_json(
        self,
        method: str,
        url: str,
        *,
        timeout: float,
        endpoint: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
        data: Optional[bytes] = None,
        auth: Any = None,
        max_retries: int = 1,
    ) -> Dict[str, Any]:
        """
        Make a JSON request, retrying only on 429, 5xx and network errors.

        Raises:
            UpstreamUnavailable: on any failure once retries are exhausted
        """
        merged_headers = {"Content-Type": "application/json", "User-Agent": USER_AGENT}
        if headers:
            merged_headers.update(headers)

        attempts = max(int(max_retries), 1)
        last_exception: Optional[Exception] = None
        for attempt in range(attempts):
            started = time.monotonic()
            status = "error"
            try:
                response = requests.request(
                    method,
                    url,
                    headers=merged_headers,
                    params=params,
                    json=json_body if data is None else None,
                    data=data,
                    auth=auth,
                    timeout=timeout,
                )
                status = str(response.status_code)
                response.raise_for_status()
                payload = response.json()
                if not isinstance(payload, dict):
                    raise ValueError(f"expected JSON object, got {type(payload).__name__}")
                return payload
            except requests.exceptions.HTTPError as exc:
                code = exc.response.status_code if exc.response is not None else 0
                if 400 <= code < 500 and code != 429:
                    logger.error("%s client error %s on %s", self.name, code, endpoint)
                    raise UpstreamUnavailable(f"{self.name}:{endpoint}", exc) from exc
                logger.warning(
                    "%s server error %s on %s, attempt %d/%d",
                    self.name, code, endpoint, attempt + 1, attempts,
                )
                last_exception = exc
            except (requests.exceptions.Timeout, requests.exceptions.ConnectionError) as exc:
                logger.warning(
                    "%s network error on %s: %s, attempt %d/%d",
                    self.name, endpoint, exc, attempt + 1, attempts,
                )
                last_exception = exc
            except (requests.exceptions.RequestException, ValueError) as exc:
                logger.error("%s request to %s failed: %s", self.name, endpoint, exc)
                raise UpstreamUnavailable(f"{self.name}:{endpoint}", exc) from exc
            finally:
                self.metrics.record_api_call(f"{self.name}:{endpoint}", time.monotonic() - started, status)

            if attempt < attempts - 1:
                backoff = (2 ** attempt) * 0.5 + random.uniform(0, 0.5)
                time.sleep(backoff)

        raise UpstreamUnavailable(f"{self.name}:{endpoint}", last_exception)
