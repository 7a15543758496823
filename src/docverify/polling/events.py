"""
Change notification streams for the polling store.

A ``StateStream`` keeps the most recent value and pushes every new value to
its subscribers, replaying the current value on subscription.
"""

from collections.abc import Callable
from typing import Generic, TypeVar

import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class StateStream(Generic[T]):
    """Observable value holder with replay-on-subscribe semantics."""

    def __init__(self, name: str, initial: T) -> None:
        self.name = name
        self._value = initial
        self._subscribers: dict[int, Callable[[T], None]] = {}
        self._next_token = 0

    @property
    def value(self) -> T:
        """Current value of the stream."""
        return self._value

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(
        self, callback: Callable[[T], None], replay: bool = True
    ) -> Callable[[], None]:
        """
        Register a callback for future values.

        Args:
            callback: Called with each emitted value
            replay: Deliver the current value immediately

        Returns:
            Callable that removes the subscription
        """
        token = self._next_token
        self._next_token += 1
        self._subscribers[token] = callback

        if replay:
            self._deliver(token, callback, self._value)

        def unsubscribe() -> None:
            self._subscribers.pop(token, None)

        return unsubscribe

    def emit(self, value: T) -> None:
        """Set the current value and notify subscribers."""
        self._value = value
        for token, callback in list(self._subscribers.items()):
            self._deliver(token, callback, value)

    def _deliver(self, token: int, callback: Callable[[T], None], value: T) -> None:
        try:
            callback(value)
        except Exception as e:
            logger.error(
                "Stream subscriber failed",
                stream=self.name,
                subscriber=token,
                error=str(e),
                exc_info=True,
            )
