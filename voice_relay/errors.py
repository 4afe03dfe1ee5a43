"""
Relay error types and teardown reporting.

Errors never unwind past the component that owns them: speaker faults end
that speaker's session, encoder faults request a full restart, listener
faults drop that listener. ``TeardownResult`` is what every teardown method
returns so callers can see what was actually released.
"""

from dataclasses import dataclass, field
from typing import List


class RelayError(Exception):
    """Base class for all relay errors."""


class AlreadyActive(RelayError):
    """A speaker session already exists for this participant."""

    def __init__(self, participant_id):
        super().__init__(f"Speaker session already active for {participant_id}")
        self.participant_id = participant_id


class RoomNotFound(RelayError):
    """The configured voice room could not be resolved."""


class CapacityExceeded(RelayError):
    """The mixer is already carrying its maximum number of inputs."""


class EncoderUnavailable(RelayError):
    """The encoder process could not be spawned."""


@dataclass
class TeardownResult:
    """Outcome of an idempotent teardown call."""

    released: List[str] = field(default_factory=list)
    already_released: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def record(self, name: str) -> None:
        self.released.append(name)

    def fail(self, name: str, exc: BaseException) -> None:
        self.errors.append(f"{name}: {type(exc).__name__}: {exc}")

    def merge(self, other: "TeardownResult") -> "TeardownResult":
        self.released.extend(other.released)
        self.errors.extend(other.errors)
        return self
