"""familyhub package: household dashboard backend with realtime multi-device sync."""

from .exceptions import (
    AggregationError,
    AssignmentNotFoundError,
    FamilyHubError,
    InsufficientStarsError,
    MalformedMessageError,
    NotFoundError,
    PrizeNotFoundError,
    ProfileNotFoundError,
    TaskNotFoundError,
    ValidationError,
)
from .hub import HubConnection, Transport, UpdateHub
from .models import (
    CalendarUpdate,
    EntrySource,
    Heartbeat,
    Hello,
    MessageType,
    Scope,
    ShoppingEntry,
    SyncUpdate,
    ThemeUpdate,
    UnknownUpdate,
    decode_message,
    encode_message,
    make_update,
)
from .ops import HealthMonitor, StructuredLogger
from .shopping import ShoppingSource, build_shopping_list, derive_shopping_list
from .sync_client import SyncClient, SyncState, build_sync_url
from .tasks import FrequencyUnit, TaskSchedule, spend_stars

__all__ = [
    "AggregationError",
    "AssignmentNotFoundError",
    "CalendarUpdate",
    "EntrySource",
    "FamilyHubError",
    "FrequencyUnit",
    "HealthMonitor",
    "Heartbeat",
    "Hello",
    "HubConnection",
    "InsufficientStarsError",
    "MalformedMessageError",
    "MessageType",
    "NotFoundError",
    "PrizeNotFoundError",
    "ProfileNotFoundError",
    "Scope",
    "ShoppingEntry",
    "ShoppingSource",
    "StructuredLogger",
    "SyncClient",
    "SyncState",
    "SyncUpdate",
    "TaskNotFoundError",
    "TaskSchedule",
    "ThemeUpdate",
    "Transport",
    "UnknownUpdate",
    "UpdateHub",
    "ValidationError",
    "build_shopping_list",
    "build_sync_url",
    "decode_message",
    "derive_shopping_list",
    "encode_message",
    "make_update",
    "spend_stars",
]
