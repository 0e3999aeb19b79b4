"""
Unread-message reconciler.

Keeps one "has unread messages" signal per session. The provider's unread
snapshot is fetched once on connect (and again on every reconnect); after
that the signal is updated from realtime events only. While the user is on
the messaging tab the signal is forced off.
"""

import asyncio
import logging
from typing import Callable, Optional

from app.client.connection import ChatConnection, call_handler

logger = logging.getLogger(__name__)

MESSAGING_TAB = "messaging"

NEW_MESSAGE_EVENTS = ("message.new", "notification.message_new")
MARK_READ_EVENT = "notification.mark_read"
MARK_UNREAD_EVENT = "notification.mark_unread"


def _event_cid(event: dict) -> Optional[str]:
    return event.get("cid") or (event.get("channel") or {}).get("cid")


class UnreadReconciler:
    def __init__(
        self,
        connection: ChatConnection,
        active_tab: Optional[str] = None,
        poll_interval: Optional[float] = None,
    ):
        self.connection = connection
        self.active_tab = active_tab
        self.poll_interval = poll_interval
        self._counts: dict[str, int] = {}
        self._total = 0
        # Last counted message per cid; message.new and notification.message_new
        # both arrive for the same message
        self._last_counted: dict[str, str] = {}
        self._subscribers: list[Callable] = []
        self._last_signal = False
        self._poll_task: Optional[asyncio.Task] = None
        self._started = False

    # -------------------------------------------------------------------------
    # Derived state
    # -------------------------------------------------------------------------

    @property
    def total_unread_count(self) -> int:
        return self._total

    @property
    def unread_counts(self) -> dict[str, int]:
        return dict(self._counts)

    @property
    def has_unread(self) -> bool:
        if self.active_tab == MESSAGING_TAB:
            return False
        return self.connection.is_connected and self._total > 0

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        self.connection.on_connect(self._handle_connect)
        self.connection.on_disconnect(self._handle_disconnect)
        for event_type in (*NEW_MESSAGE_EVENTS, MARK_READ_EVENT, MARK_UNREAD_EVENT):
            self.connection.on(event_type, self._handle_event)

        if self.connection.is_connected:
            await self.refresh()
        if self.poll_interval:
            self._poll_task = asyncio.create_task(self._poll())

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        self.connection.off_connect(self._handle_connect)
        self.connection.off_disconnect(self._handle_disconnect)
        for event_type in (*NEW_MESSAGE_EVENTS, MARK_READ_EVENT, MARK_UNREAD_EVENT):
            self.connection.off(event_type, self._handle_event)
        if self._poll_task is not None:
            self._poll_task.cancel()
            try:
                await self._poll_task
            except asyncio.CancelledError:
                pass
            self._poll_task = None

    def subscribe(self, callback: Callable) -> Callable[[], None]:
        """Register a callback invoked with the new signal whenever it changes. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def set_active_tab(self, tab: Optional[str]) -> None:
        self.active_tab = tab
        await self._notify()

    async def refresh(self) -> None:
        """Replace local state with the provider's unread snapshot."""
        try:
            counts = await self.connection.get_unread_counts()
        except Exception as e:
            logger.error(f"Failed to fetch unread snapshot for {self.connection.user_id}: {e}")
            return
        self._counts = {cid: count for cid, count in counts.items() if count > 0}
        self._last_counted = {}
        self._total = sum(self._counts.values())
        await self._notify()

    # -------------------------------------------------------------------------
    # Connection and event handlers
    # -------------------------------------------------------------------------

    async def _handle_connect(self) -> None:
        await self.refresh()

    async def _handle_disconnect(self) -> None:
        self._counts = {}
        self._last_counted = {}
        self._total = 0
        await self._notify()

    async def _handle_event(self, event: dict) -> None:
        event_type = event.get("type")
        cid = _event_cid(event)

        if event_type in NEW_MESSAGE_EVENTS:
            sender_id = (event.get("user") or (event.get("message") or {}).get("user") or {}).get("id")
            message_id = (event.get("message") or {}).get("id")
            if cid and sender_id != self.connection.user_id:
                if message_id is None or self._last_counted.get(cid) != message_id:
                    self._counts[cid] = self._counts.get(cid, 0) + 1
                    if message_id is not None:
                        self._last_counted[cid] = message_id
        elif event_type == MARK_READ_EVENT:
            if cid:
                self._counts.pop(cid, None)
            else:
                self._counts = {}
                self._last_counted = {}
        elif event_type == MARK_UNREAD_EVENT and cid:
            self._counts[cid] = max(int(event.get("unread_messages") or 0), 1)

        if event.get("total_unread_count") is not None:
            self._total = int(event["total_unread_count"])
        else:
            self._total = sum(self._counts.values())

        await self._notify()

    async def _poll(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            if self.connection.is_connected:
                await self.refresh()

    async def _notify(self) -> None:
        signal = self.has_unread
        if signal == self._last_signal:
            return
        self._last_signal = signal
        for callback in list(self._subscribers):
            try:
                await call_handler(callback, signal)
            except Exception as e:
                logger.error(f"Unread subscriber failed: {e}")
