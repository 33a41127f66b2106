"""
Connector lifecycle state machine.

States:
- CONNECTING: Initial state, the backend is being connected
- READY: Operations are accepted
- CLOSING: Shutdown in progress
- CLOSED: Terminal
- FAILED: Startup connection failed, moves on to CLOSED

    CONNECTING -> READY -> CLOSING -> CLOSED
    CONNECTING -> FAILED -> CLOSED
    CONNECTING -> CLOSING
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from vertector_keyrouter.errors import ConnectorStateError

logger = logging.getLogger(__name__)


class ConnectorState(str, Enum):
    """Lifecycle states of a connector."""
    CONNECTING = "CONNECTING"
    READY = "READY"
    CLOSING = "CLOSING"
    CLOSED = "CLOSED"
    FAILED = "FAILED"


ALLOWED_TRANSITIONS: dict[ConnectorState, frozenset[ConnectorState]] = {
    ConnectorState.CONNECTING: frozenset({ConnectorState.READY, ConnectorState.FAILED, ConnectorState.CLOSING}),
    ConnectorState.READY: frozenset({ConnectorState.CLOSING}),
    ConnectorState.CLOSING: frozenset({ConnectorState.CLOSED}),
    ConnectorState.FAILED: frozenset({ConnectorState.CLOSED}),
    ConnectorState.CLOSED: frozenset(),
}


@dataclass(frozen=True)
class StateChange:
    """Notification delivered to lifecycle listeners."""

    previous: ConnectorState
    current: ConnectorState
    error: Exception | None = None
    timestamp: float = field(default_factory=time.time)


StateListener = Callable[[StateChange], None]


class ConnectionLifecycle:
    """
    Explicit lifecycle of one connector.

    Listeners are called synchronously on every transition; an exception
    raised by a listener is logged and does not affect the transition or
    other listeners. READY can only be entered once.
    """

    def __init__(self):
        self._state = ConnectorState.CONNECTING
        self._listeners: list[StateListener] = []
        self._history: list[StateChange] = []
        self._settled: asyncio.Event | None = None
        self.error: Exception | None = None

    @property
    def state(self) -> ConnectorState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ConnectorState.READY

    @property
    def is_terminal(self) -> bool:
        return self._state is ConnectorState.CLOSED

    @property
    def history(self) -> list[StateChange]:
        return list(self._history)

    def can_transition(self, target: ConnectorState) -> bool:
        return target in ALLOWED_TRANSITIONS[self._state]

    def transition(self, target: ConnectorState, error: Exception | None = None) -> StateChange:
        """
        Move to ``target`` and notify listeners.

        Raises:
            ConnectorStateError: If the transition is not allowed
        """
        if not self.can_transition(target):
            raise ConnectorStateError(self._state.value, target.value)

        change = StateChange(previous=self._state, current=target, error=error)
        self._state = target
        if error is not None:
            self.error = error
        self._history.append(change)

        logger.info(f"Connector state: {change.previous.value} -> {change.current.value}")

        if target is not ConnectorState.CONNECTING and self._settled is not None:
            self._settled.set()

        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.error(f"Lifecycle listener {listener!r} raised: {e}", exc_info=True)

        return change

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """
        Register a listener for state changes.

        Returns:
            Callable removing the listener again
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def wait_ready(self, timeout: float | None = None) -> bool:
        """
        Wait until the connector leaves CONNECTING.

        Returns:
            True if the connector became READY, False if it failed or closed instead
        """
        if self._state is ConnectorState.CONNECTING:
            if self._settled is None:
                self._settled = asyncio.Event()
            await asyncio.wait_for(self._settled.wait(), timeout)

        return self._state is ConnectorState.READY
