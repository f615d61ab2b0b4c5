"""Plan executor implementations."""
from .simulated import SimulatedExecutor
from .webhook import WebhookExecutor

__all__ = ["SimulatedExecutor", "WebhookExecutor"]
