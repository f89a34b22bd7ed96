"""Persistence and SQLModel definitions for the familyhub web service."""
from __future__ import annotations

import json
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.engine import Engine
from sqlmodel import Field, Session, SQLModel, create_engine, select
from starlette.concurrency import run_in_threadpool

from .config import SQLITE_FILE_NAME


# ---------------------------------------------------------------------------
# Engine helpers
# ---------------------------------------------------------------------------
def make_engine(path: str = SQLITE_FILE_NAME) -> Engine:
    return create_engine(
        f"sqlite:///{path}",
        echo=False,
        connect_args={"check_same_thread": False},
    )


def open_session(engine: Engine) -> Session:
    return Session(engine, expire_on_commit=False)


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------
def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(moment: datetime) -> str:
    """ISO text in UTC; SQLite hands stored timestamps back without a zone."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
class Profile(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    parent_user_id: str = Field(index=True)
    name: str
    avatar: str = ""
    age: Optional[int] = None
    stars: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Task(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    title: str
    description: str = ""
    stars: int = 1
    quantity: int = 1
    frequency: Optional[int] = None
    frequency_unit: Optional[str] = None  # hours|days|weeks
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class TaskAssignment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    profile_id: int = Field(index=True)
    task_id: int = Field(index=True)
    completed: bool = False
    last_completed_at: Optional[datetime] = None
    available_at: datetime = Field(default_factory=utc_now)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Prize(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    title: str
    description: str = ""
    star_cost: int = 10
    icon: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class Redemption(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    profile_id: int
    prize_id: int
    prize_title: str
    star_cost: int
    redeemed_at: datetime = Field(default_factory=utc_now)


class MealPlan(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    meal_date: date = Field(index=True)
    meal_type: str = "dinner"  # breakfast|lunch|dinner|snack
    title: str = ""
    recipe: str = ""
    ingredients_json: str = "[]"
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class InventoryItem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    name: str
    quantity: float = 1
    unit: str = "unit"
    category: str = "other"
    expiry_date: Optional[date] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ShoppingItem(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True)
    name: str
    quantity: float = 1
    unit: str = "unit"
    purchased: bool = False
    created_at: datetime = Field(default_factory=utc_now)


class EventAssignment(SQLModel, table=True):
    id: str = Field(primary_key=True)  # <calendarId>__<eventId> or <calendarId>__series__<recurringId>
    user_id: str = Field(index=True)
    event_id: str
    recurring_event_id: Optional[str] = None
    calendar_id: str
    summary: str = ""
    start: Optional[str] = None
    end: Optional[str] = None
    start_date: Optional[date] = None
    profile_ids_json: str = "[]"
    apply_to_series: bool = False
    updated_at: datetime = Field(default_factory=utc_now)


class UserSettings(SQLModel, table=True):
    user_id: str = Field(primary_key=True)
    theme_json: str = "{}"
    features_json: str = "[]"
    updated_at: datetime = Field(default_factory=utc_now)


# ---------------------------------------------------------------------------
# Database initialisation
# ---------------------------------------------------------------------------
def create_db_and_tables(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)


def ping_database(engine: Engine) -> bool:
    with open_session(engine) as session:
        session.exec(select(Profile.id).limit(1)).first()
    return True


# ---------------------------------------------------------------------------
# JSON column helpers
# ---------------------------------------------------------------------------
def load_json(raw: Optional[str], default: Any) -> Any:
    if not raw:
        return default
    try:
        value = json.loads(raw)
    except ValueError:
        return default
    return value if isinstance(value, type(default)) else default


def dump_json(value: Any) -> str:
    return json.dumps(value, default=str)


# ---------------------------------------------------------------------------
# Row -> document conversion (camelCase, as served to the frontend)
# ---------------------------------------------------------------------------
def profile_document(profile: Profile) -> Dict[str, Any]:
    return {
        "id": profile.id,
        "parentUserId": profile.parent_user_id,
        "name": profile.name,
        "avatar": profile.avatar,
        "age": profile.age,
        "stars": profile.stars,
        "createdAt": _iso(profile.created_at),
        "updatedAt": _iso(profile.updated_at),
    }


def task_document(task: Task) -> Dict[str, Any]:
    return {
        "id": task.id,
        "userId": task.user_id,
        "title": task.title,
        "description": task.description,
        "stars": task.stars,
        "quantity": task.quantity,
        "frequency": task.frequency,
        "frequencyUnit": task.frequency_unit,
        "createdAt": _iso(task.created_at),
        "updatedAt": _iso(task.updated_at),
    }


def assignment_document(assignment: TaskAssignment) -> Dict[str, Any]:
    return {
        "id": assignment.id,
        "profileId": assignment.profile_id,
        "taskId": assignment.task_id,
        "completed": assignment.completed,
        "lastCompletedAt": _iso(assignment.last_completed_at) if assignment.last_completed_at else None,
        "availableAt": _iso(assignment.available_at),
        "createdAt": _iso(assignment.created_at),
        "updatedAt": _iso(assignment.updated_at),
    }


def prize_document(prize: Prize) -> Dict[str, Any]:
    return {
        "id": prize.id,
        "userId": prize.user_id,
        "title": prize.title,
        "description": prize.description,
        "starCost": prize.star_cost,
        "icon": prize.icon,
        "createdAt": _iso(prize.created_at),
    }


def meal_document(meal: MealPlan) -> Dict[str, Any]:
    return {
        "id": meal.id,
        "userId": meal.user_id,
        "date": meal.meal_date.isoformat(),
        "mealType": meal.meal_type,
        "title": meal.title,
        "recipe": meal.recipe,
        "ingredients": load_json(meal.ingredients_json, []),
        "createdAt": _iso(meal.created_at),
        "updatedAt": _iso(meal.updated_at),
    }


def inventory_document(item: InventoryItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "userId": item.user_id,
        "name": item.name,
        "quantity": item.quantity,
        "unit": item.unit,
        "category": item.category,
        "expiryDate": item.expiry_date.isoformat() if item.expiry_date else None,
        "createdAt": _iso(item.created_at),
        "updatedAt": _iso(item.updated_at),
    }


def shopping_document(item: ShoppingItem) -> Dict[str, Any]:
    return {
        "id": item.id,
        "userId": item.user_id,
        "name": item.name,
        "quantity": item.quantity,
        "unit": item.unit,
        "purchased": item.purchased,
        "createdAt": _iso(item.created_at),
    }


def event_assignment_document(assignment: EventAssignment) -> Dict[str, Any]:
    return {
        "id": assignment.id,
        "userId": assignment.user_id,
        "eventId": assignment.event_id,
        "recurringEventId": assignment.recurring_event_id,
        "calendarId": assignment.calendar_id,
        "summary": assignment.summary,
        "start": assignment.start,
        "end": assignment.end,
        "startDate": assignment.start_date.isoformat() if assignment.start_date else None,
        "profileIds": load_json(assignment.profile_ids_json, []),
        "applyToSeries": assignment.apply_to_series,
        "updatedAt": _iso(assignment.updated_at),
    }


# ---------------------------------------------------------------------------
# Shopping list fetch layer
# ---------------------------------------------------------------------------
def list_meals(engine: Engine, user_id: str, start: Optional[date] = None, end: Optional[date] = None) -> List[Dict[str, Any]]:
    query = select(MealPlan).where(MealPlan.user_id == user_id)
    if start is not None:
        query = query.where(MealPlan.meal_date >= start)
    if end is not None:
        query = query.where(MealPlan.meal_date <= end)
    with open_session(engine) as session:
        return [meal_document(meal) for meal in session.exec(query.order_by(MealPlan.meal_date)).all()]


def list_inventory(engine: Engine, user_id: str) -> List[Dict[str, Any]]:
    with open_session(engine) as session:
        rows = session.exec(select(InventoryItem).where(InventoryItem.user_id == user_id)).all()
        return [inventory_document(item) for item in rows]


def list_open_shopping_items(engine: Engine, user_id: str) -> List[Dict[str, Any]]:
    with open_session(engine) as session:
        rows = session.exec(
            select(ShoppingItem)
            .where(ShoppingItem.user_id == user_id)
            .where(ShoppingItem.purchased == False)  # noqa: E712
        ).all()
        return [shopping_document(item) for item in rows]


class SqlShoppingSource:
    """Feed the shopping list aggregation from the SQLModel tables."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    async def fetch_meals(self, user_id: str, start: date, end: date) -> Sequence[Dict[str, Any]]:
        return await run_in_threadpool(list_meals, self.engine, user_id, start, end)

    async def fetch_inventory(self, user_id: str) -> Sequence[Dict[str, Any]]:
        return await run_in_threadpool(list_inventory, self.engine, user_id)

    async def fetch_open_shopping_items(self, user_id: str) -> Sequence[Dict[str, Any]]:
        return await run_in_threadpool(list_open_shopping_items, self.engine, user_id)


__all__ = [
    "EventAssignment",
    "InventoryItem",
    "MealPlan",
    "Prize",
    "Profile",
    "Redemption",
    "ShoppingItem",
    "SqlShoppingSource",
    "Task",
    "TaskAssignment",
    "UserSettings",
    "assignment_document",
    "create_db_and_tables",
    "dump_json",
    "event_assignment_document",
    "inventory_document",
    "list_inventory",
    "list_meals",
    "list_open_shopping_items",
    "load_json",
    "make_engine",
    "meal_document",
    "open_session",
    "ping_database",
    "prize_document",
    "profile_document",
    "shopping_document",
    "task_document",
    "utc_now",
]
