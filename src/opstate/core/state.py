"""Operation state snapshots and the observable store that holds them."""

from dataclasses import dataclass, replace, asdict
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from .logging_config import get_core_logger

logger = get_core_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class OperationState(Generic[T]):
    """Immutable snapshot of one runner's operation."""

    is_loading: bool = False
    error: Optional[BaseException] = None
    data: Optional[T] = None
    start_time: Optional[float] = None
    duration: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


INITIAL_STATE: OperationState = OperationState()

StateCallback = Callable[[OperationState], None]


class StateStore(Generic[T]):
    """
    Holds the current OperationState and notifies subscribers on change.

    UI bindings subscribe here; the store itself knows nothing about them.
    """

    def __init__(self, initial: Optional[OperationState] = None):
        self._state: OperationState = initial or INITIAL_STATE
        self._callbacks: List[StateCallback] = []

    def get_state(self) -> OperationState:
        return self._state

    def subscribe(self, callback: StateCallback) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def update(self, **changes: Any) -> OperationState:
        """Publish a new snapshot with the given fields replaced."""
        self._state = replace(self._state, **changes)
        self._notify()
        return self._state

    def set(self, state: OperationState) -> None:
        self._state = state
        self._notify()

    def _notify(self) -> None:
        for callback in list(self._callbacks):
            try:
                callback(self._state)
            except Exception as e:
                logger.error(
                    "state_callback_error",
                    callback=getattr(callback, "__name__", str(callback)),
                    error=str(e),
                )
