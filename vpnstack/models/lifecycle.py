"""Lifecycle and health states of an install."""
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class StackState(str, Enum):
    """Where an install target is in its lifecycle."""

    UNINITIALIZED = "uninitialized"
    PREPARED = "prepared"            # directory layout exists
    SECRETS_BOUND = "secrets_bound"  # secret file bound, artifacts written
    STARTED = "started"
    HEALTHY = "healthy"
    DEGRADED = "degraded"

    @classmethod
    def detect(cls, layout) -> 'StackState':
        """Recover the state of an existing install from an InstallLayout."""
        if layout.env_file.exists() and layout.compose_file.exists():
            return cls.SECRETS_BOUND
        if layout.root.exists() and layout.authelia_config_dir.exists():
            return cls.PREPARED
        return cls.UNINITIALIZED

    @property
    def is_running(self) -> bool:
        return self in (StackState.STARTED, StackState.HEALTHY, StackState.DEGRADED)


@dataclass(frozen=True)
class HealthReport:
    """Outcome of one bounded health poll."""

    state: StackState
    elapsed: float
    status: str
    attempts: int
    container: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return self.state == StackState.HEALTHY
