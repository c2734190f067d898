"""SchoolWallet web console package."""
from __future__ import annotations

from importlib import import_module
from types import ModuleType
from typing import Any, List

from . import persistence

_IMPL_MODULE: ModuleType | None = None

__all__: List[str] = list(getattr(persistence, "__all__", ()))


def _load_impl() -> ModuleType:
    global _IMPL_MODULE
    if _IMPL_MODULE is not None:
        return _IMPL_MODULE
    module = import_module(".application", __name__)
    _IMPL_MODULE = module
    __all__.extend(name for name in getattr(module, "__all__", ()) if name not in __all__)
    return module


def __getattr__(name: str) -> Any:
    if hasattr(persistence, name):
        return getattr(persistence, name)
    return getattr(_load_impl(), name)


def __dir__() -> List[str]:
    return sorted(set(globals()) | set(__all__) | set(dir(_load_impl())))
