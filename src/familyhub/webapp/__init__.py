"""familyhub web service package (FastAPI, SQLModel and the sync socket)."""
from __future__ import annotations

from importlib import import_module
from types import ModuleType
from typing import Any, List

_IMPL_MODULE: ModuleType | None = None

_WEB_MODULES = {"fastapi", "starlette", "sqlmodel", "sqlalchemy", "dotenv"}

try:
    from . import persistence as _persistence
except ModuleNotFoundError as exc:  # pragma: no cover - missing web dependencies
    if exc.name in _WEB_MODULES:
        raise RuntimeError(
            "familyhub.webapp requires FastAPI/SQLModel. Install the project with `pip install -e .`."
        ) from exc
    raise

persistence = _persistence
__all__: List[str] = list(getattr(_persistence, "__all__", ()))


def _load_impl() -> ModuleType:
    global _IMPL_MODULE
    if _IMPL_MODULE is not None:
        return _IMPL_MODULE
    module = import_module(".application", __name__)
    _IMPL_MODULE = module
    __all__.extend(name for name in getattr(module, "__all__", ()) if name not in __all__)
    return module


def __getattr__(name: str) -> Any:
    if hasattr(_persistence, name):
        return getattr(_persistence, name)
    module = _load_impl()
    try:
        return getattr(module, name)
    except AttributeError as exc:
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}") from exc


def __dir__() -> List[str]:
    return sorted(set(globals()) | set(__all__) | set(getattr(_load_impl(), "__all__", ())))
