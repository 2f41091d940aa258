from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional


@dataclass(frozen=True)
class StoreChange:
    """A value transition observed on a shared key, as seen by the other handles"""
    key: str
    old_value: Optional[str]
    new_value: Optional[str]


StoreListener = Callable[[StoreChange], Awaitable[None]]


class SharedStorePort(ABC):
    """
    One tab's handle onto the shared key-value store.

    Listeners are only told about writes made through OTHER handles, and only
    when the stored value actually changed. Delivery is best-effort.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Read the current value of a key, None if absent"""
        pass

    @abstractmethod
    async def set(self, key: str, value: str) -> None:
        """Store a value under a key"""
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a key (no-op when absent)"""
        pass

    @abstractmethod
    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """Register a change listener, returns a callable that unregisters it"""
        pass
