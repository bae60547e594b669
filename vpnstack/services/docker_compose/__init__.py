"""
Docker Compose integration services.

Provides the runner used by the lifecycle orchestrator and backup coordinator
to drive the orchestrated stack.
"""

from .runner import HEALTH_FORMAT, ComposeRunner

__all__ = [
    "ComposeRunner",
    "HEALTH_FORMAT",
]
