"""Derived shopping list: meal demand minus pantry supply, plus manual items.

The engine is split in two layers.  The pure functions (``required_ledger``,
``available_ledger``, ``manual_ledger``, ``auto_ledger`` and
``combine_entries``) work on plain document mappings and never touch storage.
:func:`build_shopping_list` is the fetch layer: it pulls meals, inventory and
the manual list concurrently from a :class:`ShoppingSource`, waits for all
three, and only then runs the pure pipeline.
"""

from __future__ import annotations

import asyncio
from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Protocol, Sequence, Tuple

from .exceptions import AggregationError
from .models import EntrySource, LedgerEntry, ShoppingEntry
from .ops import StructuredLogger
from .quantities import ZERO, add_quantities, round_quantity, subtract_quantities, to_quantity

DEFAULT_DAYS = 7
DEFAULT_UNIT = "unit"

LedgerKey = Tuple[str, str]
Document = Mapping[str, Any]


def normalize_key(name: Any, unit: Any = None) -> LedgerKey:
    """Return the lowercase, trimmed ``(name, unit)`` pair used to match ingredients."""

    clean_name = str(name or "").strip().lower()
    clean_unit = str(unit or "").strip().lower() or DEFAULT_UNIT
    return clean_name, clean_unit


def coerce_days(value: Any, *, default: int = DEFAULT_DAYS) -> int:
    """Parse the ``days`` query value, falling back to ``default`` and never below 1."""

    if value is None or value == "":
        return max(default, 1)
    try:
        days = int(str(value).strip())
    except ValueError:
        return max(default, 1)
    return max(days, 1)


def shopping_window(days: int, *, today: date) -> Tuple[date, date]:
    """Inclusive ``[today, today + days - 1]`` window, clamped to the last representable date."""

    span = min(max(days, 1), (date.max - today).days + 1)
    return today, today + timedelta(days=span - 1)


class Ledger:
    """Accumulate quantities keyed by normalised ``(name, unit)``."""

    def __init__(self) -> None:
        self._entries: Dict[LedgerKey, LedgerEntry] = {}

    def add(self, name: Any, unit: Any, quantity: Decimal) -> Optional[LedgerKey]:
        display_name = str(name or "").strip()
        if not display_name:
            return None
        key = normalize_key(display_name, unit)
        entry = self._entries.get(key)
        if entry is None:
            display_unit = str(unit or "").strip() or DEFAULT_UNIT
            entry = LedgerEntry(name=display_name, unit=display_unit)
            self._entries[key] = entry
        entry.quantity = add_quantities(entry.quantity, quantity)
        return key

    def quantity(self, key: LedgerKey) -> Decimal:
        entry = self._entries.get(key)
        return entry.quantity if entry else ZERO

    def items(self) -> Iterator[Tuple[LedgerKey, LedgerEntry]]:
        return iter(self._entries.items())

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[LedgerKey]:
        return iter(self._entries)

    def __len__(self) -> int:
        return len(self._entries)


def _ingredients(meal: Document) -> Iterable[Any]:
    ingredients = meal.get("ingredients")
    return ingredients if isinstance(ingredients, (list, tuple)) else ()


def required_ledger(meals: Iterable[Document]) -> Ledger:
    """Sum the ingredient demand of ``meals``.

    A bare string ingredient counts as one ``unit``.  Structured ingredients
    with a missing, zero or non-numeric quantity also count as one.
    """

    ledger = Ledger()
    for meal in meals:
        for ingredient in _ingredients(meal):
            if not ingredient:
                continue
            if isinstance(ingredient, str):
                ledger.add(ingredient, DEFAULT_UNIT, Decimal("1"))
                continue
            if not isinstance(ingredient, Mapping):
                continue
            quantity = to_quantity(ingredient.get("quantity"), default=1)
            if quantity == ZERO:
                quantity = Decimal("1")
            ledger.add(ingredient.get("name"), ingredient.get("unit"), quantity)
    return ledger


def _quantity_ledger(items: Iterable[Document]) -> Ledger:
    ledger = Ledger()
    for item in items:
        ledger.add(item.get("name"), item.get("unit"), to_quantity(item.get("quantity"), default=0))
    return ledger


def available_ledger(inventory: Iterable[Document]) -> Ledger:
    """Sum pantry supply; missing or non-numeric quantities count as zero."""

    return _quantity_ledger(inventory)


def manual_ledger(shopping_items: Iterable[Document]) -> Ledger:
    """Sum the manually requested quantities, skipping purchased items."""

    return _quantity_ledger(item for item in shopping_items if not item.get("purchased"))


def auto_ledger(required: Ledger, available: Ledger) -> Ledger:
    """Keep only the keys whose demand exceeds supply, with the shortfall as quantity."""

    shortfall = Ledger()
    for key, entry in required.items():
        remaining = subtract_quantities(entry.quantity, available.quantity(key))
        if remaining > ZERO:
            shortfall.add(entry.name, entry.unit, round_quantity(remaining))
    return shortfall


def combine_entries(auto: Ledger, manual: Ledger, *, user_id: str) -> List[ShoppingEntry]:
    """Merge automatic and manual ledgers into tagged shopping entries."""

    combined = Ledger()
    for ledger in (auto, manual):
        for _key, entry in ledger.items():
            combined.add(entry.name, entry.unit, entry.quantity)

    entries: List[ShoppingEntry] = []
    for key, entry in combined.items():
        in_auto = key in auto
        in_manual = key in manual
        if in_auto and in_manual:
            source = EntrySource.MIXED
        elif in_auto:
            source = EntrySource.AUTO
        else:
            source = EntrySource.MANUAL
        entries.append(
            ShoppingEntry(
                id=f"combined-{key[0]}|{key[1]}",
                user_id=user_id,
                name=entry.name,
                quantity=round_quantity(entry.quantity),
                unit=entry.unit,
                source=source,
            )
        )
    entries.sort(key=lambda item: (item.name.lower(), item.unit.lower()))
    return entries


def derive_shopping_list(
    meals: Iterable[Document],
    inventory: Iterable[Document],
    shopping_items: Iterable[Document],
    *,
    user_id: str,
) -> List[ShoppingEntry]:
    """Run the full aggregation over already fetched snapshots."""

    required = required_ledger(meals)
    available = available_ledger(inventory)
    manual = manual_ledger(shopping_items)
    return combine_entries(auto_ledger(required, available), manual, user_id=user_id)


class ShoppingSource(Protocol):
    """Storage collaborator providing the three aggregation inputs."""

    async def fetch_meals(self, user_id: str, start: date, end: date) -> Sequence[Document]: ...

    async def fetch_inventory(self, user_id: str) -> Sequence[Document]: ...

    async def fetch_open_shopping_items(self, user_id: str) -> Sequence[Document]: ...


async def build_shopping_list(
    source: ShoppingSource,
    user_id: str,
    *,
    days: int = DEFAULT_DAYS,
    today: date,
    logger: StructuredLogger | None = None,
) -> List[ShoppingEntry]:
    """Fetch the three inputs concurrently and derive the combined list.

    Any failing fetch fails the whole request with :class:`AggregationError`.
    """

    start, end = shopping_window(days, today=today)
    results = await asyncio.gather(
        source.fetch_meals(user_id, start, end),
        source.fetch_inventory(user_id),
        source.fetch_open_shopping_items(user_id),
        return_exceptions=True,
    )
    failures = [result for result in results if isinstance(result, BaseException)]
    if failures:
        if logger is not None:
            logger.log("shopping_list_failed", user=user_id, error=repr(failures[0]))
        raise AggregationError("Failed to build auto shopping list") from failures[0]
    meals, inventory, shopping_items = results
    return derive_shopping_list(meals, inventory, shopping_items, user_id=user_id)


__all__ = [
    "DEFAULT_DAYS",
    "DEFAULT_UNIT",
    "Ledger",
    "ShoppingSource",
    "auto_ledger",
    "available_ledger",
    "build_shopping_list",
    "coerce_days",
    "combine_entries",
    "derive_shopping_list",
    "manual_ledger",
    "normalize_key",
    "required_ledger",
    "shopping_window",
]
