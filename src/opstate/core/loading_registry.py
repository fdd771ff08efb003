"""
Loading Registry

Keyed loading flags shared across a session, e.g. to drive one global
spinner from many independent operations.

Example:
    registry = LoadingRegistry()

    listings = await registry.with_loading("search.listings", fetch_listings)
    registry.is_any_loading()  # False again once fetch_listings settles
"""

from typing import Any, Awaitable, Callable, Dict, List, TypeVar

from .logging_config import get_core_logger

logger = get_core_logger()

T = TypeVar("T")

RegistryCallback = Callable[[Dict[str, bool]], None]


class LoadingRegistry:
    """Map of loading keys to flags with change notification."""

    def __init__(self):
        self._flags: Dict[str, bool] = {}
        self._callbacks: List[RegistryCallback] = []

    def set_loading(self, key: str, is_loading: bool) -> None:
        if self._flags.get(key) == is_loading:
            return
        self._flags[key] = is_loading
        logger.debug("loading_flag_changed", key=key, is_loading=is_loading)
        self._notify()

    def is_loading(self, key: str) -> bool:
        return self._flags.get(key, False)

    def is_any_loading(self) -> bool:
        return any(self._flags.values())

    def clear(self) -> None:
        self._flags = {}
        self._notify()

    def get_state(self) -> Dict[str, bool]:
        return dict(self._flags)

    def subscribe(self, callback: RegistryCallback) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    async def with_loading(
        self, key: str, func: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        """Await func with ``key`` flagged as loading for the duration."""
        self.set_loading(key, True)
        try:
            return await func(*args, **kwargs)
        finally:
            self.set_loading(key, False)

    def _notify(self) -> None:
        snapshot = self.get_state()
        for callback in list(self._callbacks):
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(
                    "loading_callback_error",
                    callback=getattr(callback, "__name__", str(callback)),
                    error=str(e),
                )
