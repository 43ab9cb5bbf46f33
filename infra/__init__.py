"""Infrastructure modules for rampsettle"""

from .metrics import MetricsRecorder  # noqa: F401
from .webhook_notifier import WebhookNotifier  # noqa: F401

__all__ = [
	"MetricsRecorder",
	"WebhookNotifier",
]
