"""
Messages and per-process state for the synchronous round engine.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Message:
    """A value sent from one process to another within a round.

    Attributes:
        sender: 1-based id of the sending process.
        receiver: 1-based id of the receiving process.
        payload: The sender's value of x.
    """

    sender: int
    receiver: int
    payload: float


@dataclass(frozen=True)
class LocalState:
    """A process's committed state between rounds."""

    id: int
    x: float


def broadcast_all(values: list[float]) -> list[Message]:
    """Flood every process's value to every other process.

    Messages are produced in canonical slot order: sender-major, then receiver,
    skipping self-addressed slots.

    Args:
        values: x of each process, indexed by id - 1.
    """
    n = len(values)
    return [
        Message(sender, receiver, float(values[sender - 1]))
        for sender in range(1, n + 1)
        for receiver in range(1, n + 1)
        if receiver != sender
    ]
