"""Controller/worker turn channel."""

from .channel import WorkerChannel, WorkerServer
from .messages import MessageError, TurnRequest, TurnResponse

__all__ = [
    "MessageError",
    "TurnRequest",
    "TurnResponse",
    "WorkerChannel",
    "WorkerServer",
]
