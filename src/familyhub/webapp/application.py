"""FastAPI service for the familyhub household app.

The service exposes the JSON API used by the family dashboard (profiles,
tasks, prizes, meals, inventory, shopping lists, calendar assignments and
display settings) together with the realtime sync socket at ``/api/ws``.
Every successful write schedules a broadcast of the matching scope so the
user's other open devices refresh.  :func:`serve` (or ``familyhub-serve``) runs the
default instance; tests build isolated ones through :func:`create_app`.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from fastapi import APIRouter, BackgroundTasks, Body, FastAPI, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import select
from starlette.websockets import WebSocketState

from ..exceptions import (
    AssignmentNotFoundError,
    FamilyHubError,
    NotFoundError,
    PrizeNotFoundError,
    ProfileNotFoundError,
    TaskNotFoundError,
    ValidationError,
)
from ..hub import UpdateHub
from ..models import Scope, make_update
from ..ops import HealthMonitor, StructuredLogger
from ..shopping import ShoppingSource, build_shopping_list, coerce_days
from ..tasks import TaskSchedule, spend_stars
from .config import (
    APP_MODE,
    CALENDAR_ASSIGNMENT_ACTION,
    CORS_ORIGINS,
    DEFAULT_PRIZE_COST,
    DEFAULT_PRIZE_ICON,
    DEFAULT_PROFILE_AVATAR,
    DEFAULT_SHOPPING_DAYS,
    HEARTBEAT_SECONDS,
    HOST,
    LOG_PATH,
    PORT,
    SEND_TIMEOUT_SECONDS,
    SYNC_CLIENT_HEADER,
    SYNC_PATH,
    WS_PING_INTERVAL,
    WS_PING_TIMEOUT,
)
from .persistence import (
    EventAssignment,
    InventoryItem,
    MealPlan,
    Prize,
    Profile,
    Redemption,
    ShoppingItem,
    SqlShoppingSource,
    Task,
    TaskAssignment,
    UserSettings,
    assignment_document,
    create_db_and_tables,
    dump_json,
    event_assignment_document,
    inventory_document,
    list_inventory,
    list_meals,
    list_open_shopping_items,
    load_json,
    make_engine,
    open_session,
    ping_database,
    prize_document,
    profile_document,
    shopping_document,
    task_document,
    utc_now,
)

router = APIRouter()


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------
def _engine(request: Request) -> Engine:
    return request.app.state.engine


def _now(request: Request) -> datetime:
    return request.app.state.clock()


def _text(payload: Mapping[str, Any], key: str, default: str = "") -> str:
    value = payload.get(key)
    if value is None:
        return default
    return str(value).strip()


def _str(value: Any) -> str:
    return "" if value is None else str(value).strip()


def _non_empty(label: str) -> Callable[[Any], str]:
    def convert(value: Any) -> str:
        text = _str(value)
        if not text:
            raise ValidationError(f"{label} cannot be empty")
        return text

    return convert


_TRUE_WORDS = frozenset({"true", "1", "yes", "on"})


def _bool(value: Any) -> bool:
    """JSON booleans, numbers and the usual form spellings (``"false"`` is false)."""

    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in _TRUE_WORDS


def _int_or_none(value: Any) -> Optional[int]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _int(value: Any, default: int) -> int:
    parsed = _int_or_none(value)
    return default if parsed is None else parsed


def _float(value: Any, default: float) -> float:
    if value is None or value == "" or isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _date_or_none(value: Any) -> Optional[date]:
    if not value:
        return None
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _date_only(value: Any) -> Optional[date]:
    """Calendar day (UTC) of an ISO timestamp, or ``None`` when unparseable."""

    if not value:
        return None
    text = str(value).strip().replace("Z", "+00:00")
    try:
        moment = datetime.fromisoformat(text)
    except ValueError:
        return _date_or_none(text)
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.date()


def _required(payload: Mapping[str, Any], *keys: str) -> Tuple[str, ...]:
    values = tuple(_text(payload, key) for key in keys)
    if not all(values):
        raise ValidationError(f"{' and '.join(keys)} {'is' if len(keys) == 1 else 'are'} required")
    return values


FieldSpec = Dict[str, Tuple[str, Callable[[Any], Any]]]


def _apply_updates(row: Any, payload: Mapping[str, Any], fields: FieldSpec, now: datetime) -> None:
    for key, (attribute, convert) in fields.items():
        if key in payload:
            setattr(row, attribute, convert(payload[key]))
    if hasattr(row, "updated_at"):
        row.updated_at = now


def broadcast_change(
    request: Request,
    background: BackgroundTasks,
    user_id: Optional[str],
    scope: Scope,
    *,
    payload: Optional[Dict[str, Any]] = None,
    action: Optional[str] = None,
) -> None:
    """Queue a fan-out of ``scope`` to ``user_id``'s sessions after the response is sent.

    The ``X-Sync-Client`` header, when present, is stamped on the message so
    the originating client drops its own echo.
    """

    if not user_id:
        return
    hub: UpdateHub = request.app.state.hub
    update = make_update(
        scope,
        user_id,
        client_id=request.headers.get(SYNC_CLIENT_HEADER),
        payload=payload,
        action=action,
    )
    background.add_task(hub.broadcast, user_id, update)


# ---------------------------------------------------------------------------
# Realtime sync socket
# ---------------------------------------------------------------------------
class StarletteTransport:
    """Adapt a Starlette :class:`WebSocket` to the hub's transport surface.

    ASGI gives the application no access to protocol ping frames.  The server
    (uvicorn with ``ws_ping_interval``/``ws_ping_timeout``, see :func:`serve`)
    pings every peer itself and closes the ones whose pong never arrives, so
    the pong waiter handed to the hub resolves while the socket is still open.
    """

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_text(self, data: str) -> None:
        await self.websocket.send_text(data)

    async def ping(self) -> Awaitable[None]:
        pong_waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        if self.is_open:
            pong_waiter.set_result(None)
        else:
            pong_waiter.set_exception(ConnectionError("sync socket is closed"))
        return pong_waiter

    async def terminate(self) -> None:
        if self.websocket.application_state == WebSocketState.CONNECTED:
            await self.websocket.close(code=status.WS_1001_GOING_AWAY)


@router.websocket(SYNC_PATH)
async def sync_socket(websocket: WebSocket) -> None:
    hub: UpdateHub = websocket.app.state.hub
    await websocket.accept()
    connection = hub.attach(StarletteTransport(websocket))
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            await hub.handle_text(connection, raw)
    except WebSocketDisconnect:
        pass
    finally:
        hub.unregister(connection)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------
@router.get("/api/health")
def health(request: Request) -> Dict[str, Any]:
    monitor: HealthMonitor = request.app.state.health
    try:
        monitor.database_online = ping_database(_engine(request))
    except SQLAlchemyError:
        monitor.database_online = False
    return monitor.status()


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------
PROFILE_FIELDS: FieldSpec = {
    "name": ("name", _non_empty("name")),
    "avatar": ("avatar", _str),
    "age": ("age", _int_or_none),
    "stars": ("stars", lambda value: _int(value, 0)),
}


@router.get("/api/profiles/{user_id}")
def list_profiles(user_id: str, request: Request) -> Dict[str, Any]:
    with open_session(_engine(request)) as session:
        rows = session.exec(select(Profile).where(Profile.parent_user_id == user_id)).all()
        return {"profiles": [profile_document(profile) for profile in rows]}


@router.post("/api/profiles/{user_id}")
def create_profile(
    user_id: str,
    request: Request,
    background: BackgroundTasks,
    payload: Dict[str, Any] = Body(...),
) -> Dict[str, Any]:
    (name,) = _required(payload, "name")
    profile = Profile(
        parent_user_id=user_id,
        name=name,
        avatar=_text(payload, "avatar") or DEFAULT_PROFILE_AVATAR,
        age=_int_or_none(payload.get("age")),
    )
    with open_session(_engine(request)) as session:
        session.add(profile)
        session.commit()
        session.refresh(profile)
    broadcast_change(request, background, user_id, Scope.PROFILES)
    return {"success": True, "profile": profile_document(profile)}


@router.put("/api/profiles/{profile_id}")
def update_profile(
    profile_id: int,
    request: Request,
    background: BackgroundTasks,
    payload: Dict[str, Any] = Body(...),
) -> Dict[str, Any]:
    with open_session(_engine(request)) as session:
        profile = session.get(Profile, profile_id)
        if profile is None:
            raise ProfileNotFoundError("Profile not found")
        _apply_updates(profile, payload, PROFILE_FIELDS, _now(request))
        session.add(profile)
        session.commit()
        user_id = profile.parent_user_id
    broadcast_change(request, background, user_id, Scope.PROFILES)
    return {"success": True}


@router.delete("/api/profiles/{profile_id}")
def delete_profile(profile_id: int, request: Request, background: BackgroundTasks) -> Dict[str, Any]:
    with open_session(_engine(request)) as session:
        profile = session.get(Profile, profile_id)
        if profile is None:
            raise ProfileNotFoundError("Profile not found")
        user_id = profile.parent_user_id
        for assignment in session.exec(select(TaskAssignment).where(TaskAssignment.profile_id == profile_id)).all():
            session.delete(assignment)
        session.delete(profile)
        session.commit()
    broadcast_change(request, background, user_id, Scope.PROFILES)
    return {"success": True}


# ---------------------------------------------------------------------------
# Tasks
# ---------------------------------------------------------------------------
TASK_FIELDS: FieldSpec = {
    "title": ("title", _non_empty("title")),
    "description": ("description", _str),
    "stars": ("stars", lambda value: _int(value, 1)),
    "quantity": ("quantity", lambda value: _int(value, 1)),
    "frequency": ("frequency", _int_or_none),
    "frequencyUnit": ("frequency_unit", lambda value: str(value) if value else None),
}


def _new_assignment(profile_id: int, task_id: int, now: datetime) -> TaskAssignment:
    return TaskAssignment(
        profile_id=profile_id,
        task_id=task_id,
        available_at=now,
        created_at=now,
        updated_at=now,
    )


@router.get("/api/tasks/catalog/{user_id}")
def task_catalog(user_id: str, request: Request) -> Dict[str, Any]:
    with open_session(_engine(request)) as session:
        rows = session.exec(select(Task).where(Task.user_id == user_id)).all()
        return {"tasks": [task_document(task) for task in rows]}


@router.get("/api/tasks/profile/{profile_id}")
def profile_tasks(profile_id: int, request: Request) -> Dict[str, Any]:
    tasks: List[Dict[str, Any]] = []
    with open_session(_engine(request)) as session:
        assignments = session.exec(select(TaskAssignment).where(TaskAssignment.profile_id == profile_id)).all()
        for assignment in assignments:
            task = session.get(Task, assignment.task_id)
            if task is None:
                continue
            document = assignment_document(assignment)
            merged = {
                "id": assignment.id,
                "taskId": assignment.task_id,
                "profileId": assignment.profile_id,
                "availableAt": document["availableAt"],
                "completed": assignment.completed,
                "lastCompletedAt": document["lastCompletedAt"],
                "assignmentCreatedAt": document["createdAt"],
                "assignmentUpdatedAt": document["updatedAt"],
            }
            details = task_document(task)
            details.pop("id")
            merged.update(details)
            tasks.append(merged)
    return {"tasks": tasks}


@router.post("/api/tasks")
def create_task(request: Request, background: BackgroundTasks, payload: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
    user_id, title = _required(payload, "userId", "title")
    now = _now(request)
    task = Task(
        user_id=user_id,
        title=title,
        description=_text(payload, "description"),
        stars=_int(payload.get("stars"), 1) or 1,
        quantity=_int(payload.get("quantity"), 1),
        frequency=_int_or_none(payload.get("frequency")),
        frequency_unit=_text(payload, "frequencyUnit") or None,
        created_at=now,
        updated_at=now,
    )
    profile_id = _int_or_none(payload.get("profileId"))
    assignment: Optional[TaskAssignment] = None
    with open_session(_engine(request)) as session:
        session.add(task)
        session.commit()
        session.refresh(task)
        if profile_id is not None:
            assignment = _new_assignment(profile_id, task.id, now)
            session.add(assignment)
            session.commit()
            session.refresh(assignment)
    broadcast_change(request, background, user_id, Scope.TASKS)
    return {
        "success": True,
        "task": task_document(task),
        "assignment": assignment_document(assignment) if assignment else None,
    }


@router.post("/api/tasks/assign")
def assign_task(request: Request, background: BackgroundTasks, payload: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
    profile_id = _int_or_none(payload.get("profileId"))
    task_id = _int_or_none(payload.get("taskId"))
    if profile_id is None or task_id is None:
        raise ValidationError("profileId and taskId are required")
    with open_session(_engine(request)) as session:
        existing = session.exec(
            select(TaskAssignment)
            .where(TaskAssignment.profile_id == profile_id)
            .where(TaskAssignment.task_id == task_id)
        ).first()
        if existing is not None:
            return {"success": True, "assignment": assignment_document(existing)}
        task = session.get(Task, task_id)
        if task is None:
            raise TaskNotFoundError("Task not found")
        assignment = _new_assignment(profile_id, task_id, _now(request))
        session.add(assignment)
        session.commit()
        session.refresh(assignment)
        user_id = task.user_id
    broadcast_change(request, background, user_id, Scope.TASKS)
    return {"success": True, "assignment": assignment_document(assignment)}


@router.post("/api/tasks/complete/{assignment_id}")
def complete_task(assignment_id: int, request: Request, background: BackgroundTasks) -> Dict[str, Any]:
    now = _now(request)
    with open_session(_engine(request)) as session:
        assignment = session.get(TaskAssignment, assignment_id)
        if assignment is None:
            raise AssignmentNotFoundError("Task assignment not found")
        task = session.get(Task, assignment.task_id)
        if task is None:
            raise TaskNotFoundError("Task not found")
        profile = session.get(Profile, assignment.profile_id)
        if profile is None:
            raise ProfileNotFoundError("Profile not found")
        schedule = TaskSchedule.from_values(task.frequency, task.frequency_unit)
        assignment.completed = not schedule.recurring
        assignment.last_completed_at = now
        assignment.available_at = schedule.next_available(now)
        assignment.updated_at = now
        profile.stars = (profile.stars or 0) + task.stars
        profile.updated_at = now
        session.add(assignment)
        session.add(profile)
        session.commit()
        user_id = profile.parent_user_id
        stars_earned = task.stars
    broadcast_change(request, background, user_id, Scope.TASKS)
    broadcast_change(request, background, user_id, Scope.PROFILES)
    return {"success": True, "starsEarned": stars_earned}


@router.put("/api/tasks/{task_id}")
def update_task(
    task_id: int,
    request: Request,
    background: BackgroundTasks,
    payload: Dict[str, Any] = Body(...),
) -> Dict[str, Any]:
    with open_session(_engine(request)) as session:
        task = session.get(Task, task_id)
        if task is None:
            raise TaskNotFoundError("Task not found")
        _apply_updates(task, payload, TASK_FIELDS, _now(request))
        session.add(task)
        session.commit()
        user_id = task.user_id
    broadcast_change(request, background, user_id, Scope.TASKS)
    return {"success": True}


@router.delete("/api/tasks/assign/{assignment_id}")
def unassign_task(assignment_id: int, request: Request, background: BackgroundTasks) -> Dict[str, Any]:
    with open_session(_engine(request)) as session:
        assignment = session.get(TaskAssignment, assignment_id)
        if assignment is None:
            raise AssignmentNotFoundError("Task assignment not found")
        task = session.get(Task, assignment.task_id)
        session.delete(assignment)
        session.commit()
        user_id = task.user_id if task else None
    broadcast_change(request, background, user_id, Scope.TASKS)
    return {"success": True}


@router.delete("/api/tasks/{task_id}")
def delete_task(task_id: int, request: Request, background: BackgroundTasks) -> Dict[str, Any]:
    with open_session(_engine(request)) as session:
        task = session.get(Task, task_id)
        if task is None:
            raise TaskNotFoundError("Task not found")
        user_id = task.user_id
        for assignment in session.exec(select(TaskAssignment).where(TaskAssignment.task_id == task_id)).all():
            session.delete(assignment)
        session.delete(task)
        session.commit()
    broadcast_change(request, background, user_id, Scope.TASKS)
    return {"success": True}


# ---------------------------------------------------------------------------
# Prizes
# ---------------------------------------------------------------------------
@router.get("/api/prizes/{user_id}")
def list_prizes(user_id: str, request: Request) -> Dict[str, Any]:
    with open_session(_engine(request)) as session:
        rows = session.exec(select(Prize).where(Prize.user_id == user_id)).all()
        return {"prizes": [prize_document(prize) for prize in rows]}


@router.post("/api/prizes")
def create_prize(request: Request, background: BackgroundTasks, payload: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
    user_id, title = _required(payload, "userId", "title")
    now = _now(request)
    prize = Prize(
        user_id=user_id,
        title=title,
        description=_text(payload, "description"),
        star_cost=_int(payload.get("starCost"), DEFAULT_PRIZE_COST) or DEFAULT_PRIZE_COST,
        icon=_text(payload, "icon") or DEFAULT_PRIZE_ICON,
        created_at=now,
        updated_at=now,
    )
    with open_session(_engine(request)) as session:
        session.add(prize)
        session.commit()
        session.refresh(prize)
    broadcast_change(request, background, user_id, Scope.PROFILES)
    return {"success": True, "prize": prize_document(prize)}


@router.post("/api/prizes/redeem")
def redeem_prize(request: Request, background: BackgroundTasks, payload: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
    prize_id = _int_or_none(payload.get("prizeId"))
    profile_id = _int_or_none(payload.get("profileId"))
    with open_session(_engine(request)) as session:
        prize = session.get(Prize, prize_id) if prize_id is not None else None
        if prize is None:
            raise PrizeNotFoundError("Prize not found")
        profile = session.get(Profile, profile_id) if profile_id is not None else None
        if profile is None:
            raise ProfileNotFoundError("Profile not found")
        profile.stars = spend_stars(profile.stars or 0, prize.star_cost)
        profile.updated_at = _now(request)
        session.add(profile)
        session.add(
            Redemption(
                profile_id=profile.id,
                prize_id=prize.id,
                prize_title=prize.title,
                star_cost=prize.star_cost,
                redeemed_at=_now(request),
            )
        )
        session.commit()
        user_id = profile.parent_user_id
        remaining = profile.stars
    broadcast_change(request, background, user_id, Scope.PROFILES)
    return {"success": True, "remainingStars": remaining}


@router.delete("/api/prizes/{prize_id}")
def delete_prize(prize_id: int, request: Request, background: BackgroundTasks) -> Dict[str, Any]:
    with open_session(_engine(request)) as session:
        prize = session.get(Prize, prize_id)
        if prize is None:
            raise PrizeNotFoundError("Prize not found")
        user_id = prize.user_id
        session.delete(prize)
        session.commit()
    broadcast_change(request, background, user_id, Scope.PROFILES)
    return {"success": True}


# ---------------------------------------------------------------------------
# Meals
# ---------------------------------------------------------------------------
def _ingredients(value: Any) -> str:
    return dump_json(value if isinstance(value, list) else [])


MEAL_FIELDS: FieldSpec = {
    "date": ("meal_date", _date_or_none),
    "mealType": ("meal_type", _str),
    "title": ("title", _str),
    "recipe": ("recipe", _str),
    "ingredients": ("ingredients_json", _ingredients),
}


@router.get("/api/meals/{user_id}")
def list_meal_plans(
    user_id: str,
    request: Request,
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
) -> Dict[str, Any]:
    meals = list_meals(_engine(request), user_id, _date_or_none(start_date), _date_or_none(end_date))
    return {"meals": meals}


@router.post("/api/meals")
def create_meal(request: Request, background: BackgroundTasks, payload: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
    (user_id,) = _required(payload, "userId")
    meal_date = _date_or_none(payload.get("date"))
    if meal_date is None:
        raise ValidationError("date is required")
    now = _now(request)
    meal = MealPlan(
        user_id=user_id,
        meal_date=meal_date,
        meal_type=_text(payload, "mealType") or "dinner",
        title=_text(payload, "title"),
        recipe=_text(payload, "recipe"),
        ingredients_json=_ingredients(payload.get("ingredients")),
        created_at=now,
        updated_at=now,
    )
    with open_session(_engine(request)) as session:
        session.add(meal)
        session.commit()
        session.refresh(meal)
    broadcast_change(request, background, user_id, Scope.MEALS)
    return {"success": True, "meal": {"id": meal.id, "userId": user_id, "date": meal_date.isoformat(), "title": meal.title}}


@router.put("/api/meals/{meal_id}")
def update_meal(
    meal_id: int,
    request: Request,
    background: BackgroundTasks,
    payload: Dict[str, Any] = Body(...),
) -> Dict[str, Any]:
    with open_session(_engine(request)) as session:
        meal = session.get(MealPlan, meal_id)
        if meal is None:
            raise NotFoundError("Meal not found")
        previous_date = meal.meal_date
        _apply_updates(meal, payload, MEAL_FIELDS, _now(request))
        if meal.meal_date is None:
            meal.meal_date = previous_date
        session.add(meal)
        session.commit()
        user_id = meal.user_id
    broadcast_change(request, background, user_id, Scope.MEALS)
    return {"success": True}


@router.delete("/api/meals/{meal_id}")
def delete_meal(meal_id: int, request: Request, background: BackgroundTasks) -> Dict[str, Any]:
    with open_session(_engine(request)) as session:
        meal = session.get(MealPlan, meal_id)
        if meal is None:
            raise NotFoundError("Meal not found")
        user_id = meal.user_id
        session.delete(meal)
        session.commit()
    broadcast_change(request, background, user_id, Scope.MEALS)
    return {"success": True}


# ---------------------------------------------------------------------------
# Inventory & shopping
# ---------------------------------------------------------------------------
INVENTORY_FIELDS: FieldSpec = {
    "name": ("name", _non_empty("name")),
    "quantity": ("quantity", lambda value: _float(value, 0)),
    "unit": ("unit", lambda value: str(value or "unit")),
    "category": ("category", lambda value: str(value or "other")),
    "expiryDate": ("expiry_date", _date_or_none),
}

SHOPPING_FIELDS: FieldSpec = {
    "name": ("name", _non_empty("name")),
    "quantity": ("quantity", lambda value: _float(value, 1)),
    "unit": ("unit", lambda value: str(value or "unit")),
    "purchased": ("purchased", _bool),
}


@router.get("/api/inventory/{user_id}")
def list_inventory_items(user_id: str, request: Request) -> Dict[str, Any]:
    return {"items": list_inventory(_engine(request), user_id)}


@router.post("/api/inventory")
def create_inventory_item(request: Request, background: BackgroundTasks, payload: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
    user_id, name = _required(payload, "userId", "name")
    now = _now(request)
    item = InventoryItem(
        user_id=user_id,
        name=name,
        quantity=_float(payload.get("quantity"), 1) or 1,
        unit=_text(payload, "unit") or "unit",
        category=_text(payload, "category") or "other",
        expiry_date=_date_or_none(payload.get("expiryDate")),
        created_at=now,
        updated_at=now,
    )
    with open_session(_engine(request)) as session:
        session.add(item)
        session.commit()
        session.refresh(item)
    broadcast_change(request, background, user_id, Scope.INVENTORY)
    return {"success": True, "item": inventory_document(item)}


@router.put("/api/inventory/{item_id}")
def update_inventory_item(
    item_id: int,
    request: Request,
    background: BackgroundTasks,
    payload: Dict[str, Any] = Body(...),
) -> Dict[str, Any]:
    with open_session(_engine(request)) as session:
        item = session.get(InventoryItem, item_id)
        if item is None:
            raise NotFoundError("Inventory item not found")
        _apply_updates(item, payload, INVENTORY_FIELDS, _now(request))
        session.add(item)
        session.commit()
        user_id = item.user_id
    broadcast_change(request, background, user_id, Scope.INVENTORY)
    return {"success": True}


@router.delete("/api/inventory/{item_id}")
def delete_inventory_item(item_id: int, request: Request, background: BackgroundTasks) -> Dict[str, Any]:
    with open_session(_engine(request)) as session:
        item = session.get(InventoryItem, item_id)
        if item is None:
            raise NotFoundError("Inventory item not found")
        user_id = item.user_id
        session.delete(item)
        session.commit()
    broadcast_change(request, background, user_id, Scope.INVENTORY)
    return {"success": True}


@router.get("/api/inventory/shopping/{user_id}")
def list_shopping_items(user_id: str, request: Request) -> Dict[str, Any]:
    return {"items": list_open_shopping_items(_engine(request), user_id)}


@router.get("/api/inventory/shopping/auto/{user_id}")
async def auto_shopping_list(user_id: str, request: Request, days: Optional[str] = Query(None)) -> Dict[str, Any]:
    state = request.app.state
    source: ShoppingSource = state.shopping_source
    entries = await build_shopping_list(
        source,
        user_id,
        days=coerce_days(days, default=DEFAULT_SHOPPING_DAYS),
        today=state.clock().date(),
        logger=state.logger,
    )
    return {"items": [entry.as_dict() for entry in entries]}


@router.post("/api/inventory/shopping")
def create_shopping_item(request: Request, background: BackgroundTasks, payload: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
    user_id, name = _required(payload, "userId", "name")
    item = ShoppingItem(
        user_id=user_id,
        name=name,
        quantity=_float(payload.get("quantity"), 1) or 1,
        unit=_text(payload, "unit") or "unit",
        created_at=_now(request),
    )
    with open_session(_engine(request)) as session:
        session.add(item)
        session.commit()
        session.refresh(item)
    broadcast_change(request, background, user_id, Scope.SHOPPING)
    return {"success": True, "item": shopping_document(item)}


@router.put("/api/inventory/shopping/item/{item_id}")
def update_shopping_item(
    item_id: int,
    request: Request,
    background: BackgroundTasks,
    payload: Dict[str, Any] = Body(...),
) -> Dict[str, Any]:
    with open_session(_engine(request)) as session:
        item = session.get(ShoppingItem, item_id)
        if item is None:
            raise NotFoundError("Shopping item not found")
        _apply_updates(item, payload, SHOPPING_FIELDS, _now(request))
        session.add(item)
        session.commit()
        user_id = item.user_id
    broadcast_change(request, background, user_id, Scope.SHOPPING)
    return {"success": True}


# ---------------------------------------------------------------------------
# Calendar event assignments
# ---------------------------------------------------------------------------
@router.get("/api/calendar/events/assignments/{user_id}")
def list_event_assignments(
    user_id: str,
    request: Request,
    time_min: Optional[str] = Query(None, alias="timeMin"),
    time_max: Optional[str] = Query(None, alias="timeMax"),
) -> Dict[str, Any]:
    query = select(EventAssignment).where(EventAssignment.user_id == user_id)
    start = _date_only(time_min)
    end = _date_only(time_max)
    if start is not None:
        query = query.where(EventAssignment.start_date >= start)
    if end is not None:
        query = query.where(EventAssignment.start_date <= end)
    merged: Dict[str, Dict[str, Any]] = {}
    with open_session(_engine(request)) as session:
        for row in session.exec(query).all():
            merged[row.id] = event_assignment_document(row)
        series = session.exec(
            select(EventAssignment)
            .where(EventAssignment.user_id == user_id)
            .where(EventAssignment.apply_to_series == True)  # noqa: E712
        ).all()
        for row in series:
            merged.setdefault(row.id, event_assignment_document(row))
    return {"assignments": list(merged.values())}


@router.post("/api/calendar/events/assignments/{user_id}")
def save_event_assignment(
    user_id: str,
    request: Request,
    background: BackgroundTasks,
    payload: Dict[str, Any] = Body(...),
) -> Dict[str, Any]:
    event_id, calendar_id = _required(payload, "eventId", "calendarId")
    recurring_event_id = _text(payload, "recurringEventId") or None
    series_mode = _bool(payload.get("applyToSeries")) and bool(recurring_event_id)
    doc_id = f"{calendar_id}__series__{recurring_event_id}" if series_mode else f"{calendar_id}__{event_id}"
    profile_ids = payload.get("profileIds")
    start = payload.get("start")
    end = payload.get("end")
    with open_session(_engine(request)) as session:
        assignment = session.get(EventAssignment, doc_id)
        if assignment is None:
            assignment = EventAssignment(id=doc_id, user_id=user_id, event_id=event_id, calendar_id=calendar_id)
        assignment.user_id = user_id
        assignment.event_id = event_id
        assignment.recurring_event_id = recurring_event_id
        assignment.calendar_id = calendar_id
        assignment.summary = _text(payload, "summary")
        assignment.start = str(start) if start else None
        assignment.end = str(end) if end else None
        assignment.start_date = _date_only(start) or _date_only(end)
        assignment.profile_ids_json = dump_json(profile_ids if isinstance(profile_ids, list) else [])
        assignment.apply_to_series = series_mode
        assignment.updated_at = _now(request)
        session.add(assignment)
        session.commit()
    broadcast_change(request, background, user_id, Scope.CALENDAR, action=CALENDAR_ASSIGNMENT_ACTION)
    return {"success": True}


# ---------------------------------------------------------------------------
# Display settings
# ---------------------------------------------------------------------------
def _load_settings(session: Any, user_id: str) -> UserSettings:
    settings = session.get(UserSettings, user_id)
    return settings if settings is not None else UserSettings(user_id=user_id)


@router.get("/api/settings/{user_id}")
def read_settings(user_id: str, request: Request) -> Dict[str, Any]:
    with open_session(_engine(request)) as session:
        settings = _load_settings(session, user_id)
        return {
            "theme": load_json(settings.theme_json, {}),
            "enabledFeatures": load_json(settings.features_json, []),
        }


@router.post("/api/settings/{user_id}/theme")
def save_theme(
    user_id: str,
    request: Request,
    background: BackgroundTasks,
    payload: Dict[str, Any] = Body(...),
) -> Dict[str, Any]:
    theme = payload.get("theme")
    if not isinstance(theme, dict):
        raise ValidationError("theme is required")
    with open_session(_engine(request)) as session:
        settings = _load_settings(session, user_id)
        settings.theme_json = dump_json(theme)
        settings.updated_at = _now(request)
        session.add(settings)
        session.commit()
    broadcast_change(request, background, user_id, Scope.THEME, payload={"theme": theme})
    return {"success": True, "theme": theme}


@router.post("/api/settings/{user_id}/features")
def save_features(
    user_id: str,
    request: Request,
    background: BackgroundTasks,
    payload: Dict[str, Any] = Body(...),
) -> Dict[str, Any]:
    features = payload.get("enabledFeatures")
    if not isinstance(features, list):
        raise ValidationError("enabledFeatures must be a list")
    features = [str(feature) for feature in features]
    with open_session(_engine(request)) as session:
        settings = _load_settings(session, user_id)
        settings.features_json = dump_json(features)
        settings.updated_at = _now(request)
        session.add(settings)
        session.commit()
    broadcast_change(request, background, user_id, Scope.SETTINGS, payload={"enabledFeatures": features})
    return {"success": True, "enabledFeatures": features}


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------
@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    create_db_and_tables(app.state.engine)
    if app.state.heartbeat_enabled:
        app.state.hub.start()
    try:
        yield
    finally:
        await app.state.hub.stop()


async def _handle_domain_error(request: Request, exc: FamilyHubError) -> JSONResponse:
    request.app.state.logger.log(
        "request_failed",
        path=request.url.path,
        error=type(exc).__name__,
        message=str(exc),
    )
    return JSONResponse({"error": str(exc)}, status_code=exc.status_code)


def create_app(
    *,
    engine: Engine | None = None,
    hub: UpdateHub | None = None,
    logger: StructuredLogger | None = None,
    shopping_source: ShoppingSource | None = None,
    clock: Callable[[], datetime] = utc_now,
    heartbeat: bool = True,
) -> FastAPI:
    """Build a service instance with its own hub, database engine and log."""

    log = logger or StructuredLogger(path=LOG_PATH)
    db_engine = engine or make_engine()
    app = FastAPI(title="Family Hub", lifespan=_lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(CORS_ORIGINS),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.logger = log
    app.state.engine = db_engine
    app.state.hub = hub or UpdateHub(heartbeat_interval=HEARTBEAT_SECONDS, send_timeout=SEND_TIMEOUT_SECONDS, logger=log)
    app.state.shopping_source = shopping_source or SqlShoppingSource(db_engine)
    app.state.clock = clock
    app.state.heartbeat_enabled = heartbeat
    monitor = HealthMonitor(mode=APP_MODE)
    monitor.add_check("sync", app.state.hub.stats)
    app.state.health = monitor
    app.add_exception_handler(FamilyHubError, _handle_domain_error)
    app.include_router(router)
    return app


app = create_app()


def serve(host: str = HOST, port: int = PORT) -> None:
    """Run the default app under uvicorn (``pip install familyhub[serve]``).

    uvicorn's own ping/pong keepalive closes peers that stop answering; the
    hub's sweep then finds those sockets closed and evicts them.
    """

    import uvicorn

    uvicorn.run(app, host=host, port=port, ws_ping_interval=WS_PING_INTERVAL, ws_ping_timeout=WS_PING_TIMEOUT)


__all__ = ["StarletteTransport", "app", "broadcast_change", "create_app", "router", "serve"]
