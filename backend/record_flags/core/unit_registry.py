"""
Unit Registry - explicit mapping of catalog unit ids to callables

Catalog descriptors only name a unit; the callable that implements it is looked
up here. Units are registered at startup, either directly or by importing the
modules listed in the flag_unit_modules setting.
"""
import asyncio
import importlib
import inspect
import threading
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from record_flags.components.contracts import UnitKind
from record_flags.core.errors import DeadlineExceeded, UnitNotRegistered
from record_flags.core.logging_config import LoggingConfig

logger = LoggingConfig.get_logger(__name__)

# Provider: (record_id) -> payload data. Computation: (SharedPayload) -> flags | None.
# Either may be sync or async.
UnitCallable = Callable[..., Any]


def _as_callable(unit: Any, kind: UnitKind) -> UnitCallable:
    """Accept plain callables or objects exposing fetch()/compute()"""
    method_name = "fetch" if kind == UnitKind.SHARED_DATA_PROVIDER else "compute"
    method = getattr(unit, method_name, None)
    if callable(method):
        return method
    if callable(unit):
        return unit
    raise TypeError(f"{kind.value} unit must be callable or define {method_name}()")


async def call_unit(fn: UnitCallable, *args, run_sync_in_thread: bool = True) -> Any:
    """
    Call a unit callable from the event loop

    Coroutine functions are awaited directly. Plain callables run in a worker
    thread when run_sync_in_thread is set, so blocking units do not stall
    the other units of a run.
    """
    if inspect.iscoroutinefunction(fn):
        return await fn(*args)
    if run_sync_in_thread:
        result = await asyncio.to_thread(fn, *args)
    else:
        result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


async def call_with_deadline(call: Awaitable[Any], timeout_seconds: Optional[float] = None) -> Any:
    """
    Await a unit call, bounded by timeout_seconds when one is set

    Raises:
        DeadlineExceeded: the call was still running when the timeout expired.
            Errors raised by the call itself, TimeoutError included, propagate
            unchanged.
    """
    if not timeout_seconds:
        return await call

    task = asyncio.ensure_future(call)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_seconds)
    except asyncio.CancelledError:
        task.cancel()
        raise
    if not done:
        task.cancel()
        raise DeadlineExceeded(timeout_seconds)
    return task.result()


class UnitRegistry:
    """
    Thread-safe registry of provider and computation callables

    Providers and computations live in separate namespaces so a provider and
    a computation may share an id.
    """

    def __init__(self):
        self._units: Dict[UnitKind, Dict[str, UnitCallable]] = {
            UnitKind.SHARED_DATA_PROVIDER: {},
            UnitKind.FLAG_COMPUTATION: {},
        }
        self._lock = threading.Lock()

    def register(self, unit_id: str, kind: UnitKind, unit: Any, replace: bool = False) -> None:
        """
        Register a unit implementation

        Args:
            unit_id: Catalog unit id
            kind: Provider or computation
            unit: Callable, or object with fetch()/compute()
            replace: Allow overriding an existing registration
        """
        fn = _as_callable(unit, kind)
        with self._lock:
            units = self._units[kind]
            if unit_id in units and not replace:
                raise ValueError(f"{kind.value} '{unit_id}' is already registered")
            units[unit_id] = fn
        logger.debug(f"Registered {kind.value} unit {unit_id}")

    def register_provider(self, unit_id: str, provider: Any, replace: bool = False) -> None:
        self.register(unit_id, UnitKind.SHARED_DATA_PROVIDER, provider, replace=replace)

    def register_computation(self, unit_id: str, computation: Any, replace: bool = False) -> None:
        self.register(unit_id, UnitKind.FLAG_COMPUTATION, computation, replace=replace)

    def provider(self, unit_id: str):
        """Decorator registering a shared data provider"""
        def decorator(fn):
            self.register_provider(unit_id, fn)
            return fn
        return decorator

    def computation(self, unit_id: str):
        """Decorator registering a flag computation"""
        def decorator(fn):
            self.register_computation(unit_id, fn)
            return fn
        return decorator

    def get(self, unit_id: str, kind: UnitKind) -> UnitCallable:
        """
        Look up the callable for a unit

        Raises:
            UnitNotRegistered: if nothing is registered under unit_id
        """
        with self._lock:
            fn = self._units[kind].get(unit_id)
        if fn is None:
            raise UnitNotRegistered(unit_id, kind.value)
        return fn

    def has(self, unit_id: str, kind: UnitKind) -> bool:
        with self._lock:
            return unit_id in self._units[kind]

    def unregister(self, unit_id: str, kind: UnitKind) -> None:
        with self._lock:
            self._units[kind].pop(unit_id, None)

    def registered_ids(self, kind: Optional[UnitKind] = None) -> List[str]:
        with self._lock:
            if kind is not None:
                return sorted(self._units[kind])
            return sorted({uid for units in self._units.values() for uid in units})

    def clear(self) -> None:
        """Remove every registration"""
        with self._lock:
            for units in self._units.values():
                units.clear()
        logger.debug("Cleared unit registry")

    def load_modules(self, module_names: Iterable[str]) -> List[str]:
        """
        Import modules whose import-time decorators register units

        Returns:
            Names of the modules imported
        """
        loaded = []
        for name in module_names:
            try:
                importlib.import_module(name)
            except ImportError as e:
                logger.error(f"Failed to load flag unit module {name}: {e}", exc_info=True)
                raise
            loaded.append(name)
            logger.info(f"Loaded flag unit module {name}")
        return loaded


# Global registry instance
_registry: Optional[UnitRegistry] = None
_registry_lock = threading.Lock()


def get_unit_registry() -> UnitRegistry:
    """Get the global UnitRegistry"""
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:
                _registry = UnitRegistry()
    return _registry


def shared_data_provider(unit_id: str):
    """Register a provider on the global registry"""
    return get_unit_registry().provider(unit_id)


def flag_computation(unit_id: str):
    """Register a computation on the global registry"""
    return get_unit_registry().computation(unit_id)
