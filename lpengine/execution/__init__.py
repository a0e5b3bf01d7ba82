"""Plan execution against venues."""

from .coordinator import ExecutionCoordinator, ExecutionReport
from .interfaces import VenueExecutionClient
from .keys import make_idempotency_key, make_plan_id
from .paper import HANG, LOST_ACK, PaperVenue

__all__ = [
    "ExecutionCoordinator",
    "ExecutionReport",
    "HANG",
    "LOST_ACK",
    "PaperVenue",
    "VenueExecutionClient",
    "make_idempotency_key",
    "make_plan_id",
]
