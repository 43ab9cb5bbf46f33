"""
rampsettle Core: Audit Logger

Structured trail of order decisions for compliance, debugging and analysis.
"""

import json
import logging
import threading
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Logs:
    - Order creation with the quote snapshot (rate tier, route, provider)
    - Rejections with their machine-readable code and numeric context
    - Applied state transitions

    Output format: JSONL (one JSON object per line). Write failures are
    logged and never abort the caller.
    """

    def __init__(self, audit_file: Optional[str] = None):
        """
        Initialize audit logger.

        Args:
            audit_file: Path to audit log file (default: logs/audit.jsonl)
        """
        if audit_file:
            self.audit_file = Path(audit_file)
        else:
            self.audit_file = Path("logs/audit.jsonl")

        self.audit_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def log_order_created(self, order: Any, quote: Optional[Dict[str, Any]] = None) -> None:
        self._write({
            "event": "order_created",
            "order_id": order.order_id,
            "business_id": order.business_id,
            "network": order.target_network,
            "token": order.target_token,
            "fiat_amount": order.fiat_amount,
            "net_amount": order.net_amount,
            "exchange_rate": order.exchange_rate,
            "estimated_token_amount": order.estimated_token_amount,
            "rate_tier": order.metadata.get("rate_tier"),
            "route_id": order.metadata.get("route_id"),
            "provider_id": order.metadata.get("provider_id"),
            "liquidity_ratio": order.metadata.get("liquidity_ratio"),
            "quote": quote,
        })

    def log_rejection(self, code: str, message: str, context: Optional[Dict[str, Any]] = None,
                      request: Optional[Dict[str, Any]] = None) -> None:
        self._write({
            "event": "order_rejected",
            "code": code,
            "message": message,
            "context": context or {},
            "request": request or {},
        })

    def log_transition(self, order_id: str, from_status: str, to_status: str,
                       reason: Optional[str] = None) -> None:
        self._write({
            "event": "order_transition",
            "order_id": order_id,
            "from": from_status,
            "to": to_status,
            "reason": reason,
        })

    def _write(self, entry: Dict[str, Any]) -> None:
        entry = {"timestamp": datetime.now(timezone.utc).isoformat(), **entry}
        try:
            line = json.dumps(entry, default=str)
            with self._lock:
                with open(self.audit_file, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
            logger.debug(f"Audited {entry['event']}")
        except Exception as e:
            logger.error(f"Failed to write audit log: {e}")

    def get_recent(self, n: int = 10, event: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        Get the N most recent audit entries (most recent first).

        Args:
            n: Number of entries to retrieve
            event: Only return entries of this event type
        """
        if not self.audit_file.exists():
            return []

        try:
            with open(self.audit_file, "r", encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            logger.error(f"Failed to read audit log: {e}")
            return []

        entries = []
        for line in reversed(lines):
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            if event and entry.get("event") != event:
                continue
            entries.append(entry)
            if len(entries) >= n:
                break
        return entries
