"""Domain models used by the familyhub package."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, ClassVar, Dict, Mapping, Optional, Type

from .exceptions import MalformedMessageError
from .quantities import as_number

SYNC_PATH = "/api/ws"


class MessageType(str, Enum):
    """Enumerates the message kinds exchanged over the sync socket."""

    HELLO = "hello"
    UPDATE = "update"
    PING = "ping"
    PONG = "pong"


class Scope(str, Enum):
    """Domain areas a receiver may need to refresh."""

    PROFILES = "profiles"
    TASKS = "tasks"
    CALENDAR = "calendar"
    THEME = "theme"
    SETTINGS = "settings"
    MEALS = "meals"
    INVENTORY = "inventory"
    SHOPPING = "shopping"


@dataclass(slots=True)
class Hello:
    """Registration message sent by a client right after the socket opens."""

    user_id: str
    client_id: Optional[str] = None

    def to_wire(self) -> Dict[str, Any]:
        wire: Dict[str, Any] = {"type": MessageType.HELLO.value, "userId": self.user_id}
        if self.client_id:
            wire["clientId"] = self.client_id
        return wire


@dataclass(slots=True)
class Heartbeat:
    """In-band liveness check (``ping``) or its answer (``pong``)."""

    type: MessageType = MessageType.PING

    def to_wire(self) -> Dict[str, Any]:
        return {"type": self.type.value}


@dataclass(slots=True)
class SyncUpdate:
    """Change notification; subclasses pin down the scope."""

    user_id: str
    client_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None

    scope: ClassVar[str] = ""

    @property
    def scope_name(self) -> str:
        return self.scope

    def to_wire(self) -> Dict[str, Any]:
        wire: Dict[str, Any] = {"type": MessageType.UPDATE.value, "userId": self.user_id}
        if self.client_id:
            wire["clientId"] = self.client_id
        if self.scope_name:
            wire["scope"] = self.scope_name
        if self.payload is not None:
            wire["payload"] = self.payload
        return wire


@dataclass(slots=True)
class ProfilesUpdate(SyncUpdate):
    scope: ClassVar[str] = Scope.PROFILES.value


@dataclass(slots=True)
class TasksUpdate(SyncUpdate):
    scope: ClassVar[str] = Scope.TASKS.value


@dataclass(slots=True)
class CalendarUpdate(SyncUpdate):
    """Calendar change; ``action`` names what happened to the events."""

    action: Optional[str] = None

    scope: ClassVar[str] = Scope.CALENDAR.value

    def to_wire(self) -> Dict[str, Any]:
        wire = SyncUpdate.to_wire(self)
        if self.action:
            wire["action"] = self.action
        return wire


@dataclass(slots=True)
class ThemeUpdate(SyncUpdate):
    """Theme change that receivers can apply without a re-fetch."""

    scope: ClassVar[str] = Scope.THEME.value

    @property
    def theme(self) -> Optional[Dict[str, Any]]:
        if not self.payload:
            return None
        theme = self.payload.get("theme")
        return theme if isinstance(theme, dict) else None


@dataclass(slots=True)
class SettingsUpdate(SyncUpdate):
    scope: ClassVar[str] = Scope.SETTINGS.value


@dataclass(slots=True)
class MealsUpdate(SyncUpdate):
    scope: ClassVar[str] = Scope.MEALS.value


@dataclass(slots=True)
class InventoryUpdate(SyncUpdate):
    scope: ClassVar[str] = Scope.INVENTORY.value


@dataclass(slots=True)
class ShoppingUpdate(SyncUpdate):
    scope: ClassVar[str] = Scope.SHOPPING.value


@dataclass(slots=True)
class UnknownUpdate(SyncUpdate):
    """Update for a scope this build does not know about (or no scope at all)."""

    raw_scope: Optional[str] = None

    @property
    def scope_name(self) -> str:
        return self.raw_scope or ""


UPDATE_TYPES: Dict[str, Type[SyncUpdate]] = {
    cls.scope: cls
    for cls in (
        ProfilesUpdate,
        TasksUpdate,
        CalendarUpdate,
        ThemeUpdate,
        SettingsUpdate,
        MealsUpdate,
        InventoryUpdate,
        ShoppingUpdate,
    )
}

SyncMessage = Hello | Heartbeat | SyncUpdate


def make_update(
    scope: Scope | str,
    user_id: str,
    *,
    client_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    action: Optional[str] = None,
) -> SyncUpdate:
    """Build the scoped update variant for ``scope``."""

    wire: Dict[str, Any] = {"type": MessageType.UPDATE.value, "userId": user_id}
    scope_value = scope.value if isinstance(scope, Scope) else scope
    if scope_value:
        wire["scope"] = scope_value
    if client_id:
        wire["clientId"] = client_id
    if payload is not None:
        wire["payload"] = payload
    if action:
        wire["action"] = action
    return update_from_wire(wire)


def update_from_wire(data: Mapping[str, Any]) -> SyncUpdate:
    user_id = _optional_str(data.get("userId")) or ""
    client_id = _optional_str(data.get("clientId"))
    payload = data.get("payload")
    if payload is not None and not isinstance(payload, dict):
        payload = {"value": payload}
    scope = _optional_str(data.get("scope"))
    update_cls = UPDATE_TYPES.get(scope or "")
    if update_cls is None:
        return UnknownUpdate(user_id=user_id, client_id=client_id, payload=payload, raw_scope=scope)
    if update_cls is CalendarUpdate:
        return CalendarUpdate(
            user_id=user_id,
            client_id=client_id,
            payload=payload,
            action=_optional_str(data.get("action")),
        )
    return update_cls(user_id=user_id, client_id=client_id, payload=payload)


def decode_message(raw: str | bytes | Mapping[str, Any]) -> SyncMessage:
    """Parse a wire message into its typed form.

    Raises :class:`MalformedMessageError` when ``raw`` is not JSON, is not an
    object, or carries an unknown ``type``.
    """

    if isinstance(raw, Mapping):
        data = raw
    else:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise MalformedMessageError("Sync message is not valid JSON.") from exc
    if not isinstance(data, Mapping):
        raise MalformedMessageError("Sync message must be a JSON object.")
    try:
        kind = MessageType(data.get("type"))
    except ValueError as exc:
        raise MalformedMessageError(f"Unsupported sync message type {data.get('type')!r}.") from exc
    if kind is MessageType.HELLO:
        return Hello(user_id=_optional_str(data.get("userId")) or "", client_id=_optional_str(data.get("clientId")))
    if kind in (MessageType.PING, MessageType.PONG):
        return Heartbeat(type=kind)
    return update_from_wire(data)


def encode_message(message: SyncMessage | Mapping[str, Any]) -> str:
    """Serialise ``message`` to its JSON wire text."""

    if isinstance(message, Mapping):
        return json.dumps(dict(message), default=str)
    return json.dumps(message.to_wire(), default=str)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value)
    return text or None


class EntrySource(str, Enum):
    """Which ledgers contributed to a combined shopping entry."""

    AUTO = "auto"
    MANUAL = "manual"
    MIXED = "mixed"


@dataclass(slots=True)
class ShoppingEntry:
    """One line of the derived shopping list."""

    id: str
    user_id: str
    name: str
    quantity: Decimal
    unit: str
    source: EntrySource
    purchased: bool = False

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "name": self.name,
            "quantity": as_number(self.quantity),
            "unit": self.unit,
            "purchased": self.purchased,
            "source": self.source.value,
        }


@dataclass(slots=True)
class LedgerEntry:
    """Running quantity for one normalised ingredient key."""

    name: str
    unit: str
    quantity: Decimal = field(default_factory=lambda: Decimal("0"))


__all__ = [
    "CalendarUpdate",
    "EntrySource",
    "Heartbeat",
    "Hello",
    "InventoryUpdate",
    "LedgerEntry",
    "MealsUpdate",
    "MessageType",
    "ProfilesUpdate",
    "Scope",
    "SettingsUpdate",
    "ShoppingEntry",
    "ShoppingUpdate",
    "SYNC_PATH",
    "SyncMessage",
    "SyncUpdate",
    "TasksUpdate",
    "ThemeUpdate",
    "UPDATE_TYPES",
    "UnknownUpdate",
    "decode_message",
    "encode_message",
    "make_update",
    "update_from_wire",
]
