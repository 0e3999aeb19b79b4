"""
Per-session chat connection manager.

One instance is built at session start and handed to whatever needs the
chat provider. `connect()` fetches the session's user token from the provider
and, when a connector is given, awaits it with that token while the state is
`connecting`. Realtime events from the provider feed are pushed in through
`dispatch()`; listeners register per event type (or "*" for every event).
"""

import enum
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

Handler = Callable[..., Union[None, Awaitable[None]]]
Connector = Callable[[str, str], Awaitable[None]]


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


async def call_handler(handler: Handler, *args: Any) -> None:
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


class ChatConnection:
    def __init__(self, provider, user_id: str, connector: Optional[Connector] = None):
        self.provider = provider
        self.user_id = user_id
        self.connector = connector
        self.token: Optional[str] = None
        self.state = ConnectionState.DISCONNECTED
        self._state_handlers: list[Handler] = []
        self._connect_handlers: list[Handler] = []
        self._disconnect_handlers: list[Handler] = []
        self._event_handlers: dict[str, list[Handler]] = {}

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    async def connect(self) -> None:
        """
        Open the session and run the on_connect callbacks.

        No-op unless disconnected. A failing token fetch or connector puts the
        connection back to disconnected and re-raises.
        """
        if self.state != ConnectionState.DISCONNECTED:
            return
        await self._set_state(ConnectionState.CONNECTING)
        logger.info(f"Connecting chat session for {self.user_id}")
        try:
            token = self.provider.create_user_token(self.user_id)
            if inspect.isawaitable(token):
                token = await token
            if self.connector is not None:
                await self.connector(self.user_id, token)
        except Exception as e:
            logger.error(f"Chat session for {self.user_id} failed to connect: {e}")
            self.token = None
            await self._set_state(ConnectionState.DISCONNECTED)
            raise

        self.token = token
        await self._set_state(ConnectionState.CONNECTED)
        for handler in list(self._connect_handlers):
            await self._run(handler)

    async def disconnect(self) -> None:
        if self.state == ConnectionState.DISCONNECTED:
            return
        self.token = None
        await self._set_state(ConnectionState.DISCONNECTED)
        logger.info(f"Chat session for {self.user_id} disconnected")
        for handler in list(self._disconnect_handlers):
            await self._run(handler)

    def on_state_change(self, handler: Handler) -> None:
        self._state_handlers.append(handler)

    def off_state_change(self, handler: Handler) -> None:
        if handler in self._state_handlers:
            self._state_handlers.remove(handler)

    def on_connect(self, handler: Handler) -> None:
        self._connect_handlers.append(handler)

    def off_connect(self, handler: Handler) -> None:
        if handler in self._connect_handlers:
            self._connect_handlers.remove(handler)

    def on_disconnect(self, handler: Handler) -> None:
        self._disconnect_handlers.append(handler)

    def off_disconnect(self, handler: Handler) -> None:
        if handler in self._disconnect_handlers:
            self._disconnect_handlers.remove(handler)

    def on(self, event_type: str, handler: Handler) -> None:
        self._event_handlers.setdefault(event_type, []).append(handler)

    def off(self, event_type: str, handler: Handler) -> None:
        handlers = self._event_handlers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)

    async def dispatch(self, event: dict) -> None:
        """Deliver one realtime event. Events arriving while disconnected are dropped."""
        if not self.is_connected:
            logger.debug(f"Dropping {event.get('type')} event while disconnected")
            return
        handlers = self._event_handlers.get(event.get("type"), []) + self._event_handlers.get("*", [])
        for handler in list(handlers):
            await self._run(handler, event)

    async def get_unread_counts(self) -> dict[str, int]:
        return await self.provider.get_unread_counts(self.user_id)

    async def _set_state(self, state: ConnectionState) -> None:
        self.state = state
        for handler in list(self._state_handlers):
            await self._run(handler, state)

    async def _run(self, handler: Handler, *args: Any) -> None:
        # A failing listener must not starve the others
        try:
            await call_handler(handler, *args)
        except Exception as e:
            logger.error(f"Chat connection handler {getattr(handler, '__name__', handler)} failed: {e}")
