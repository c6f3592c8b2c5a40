"""
Change-event subscriptions as explicit handles.

A SubscriptionHandle is one registered interest in a table's changes,
scoped by an optional row filter. The SubscriptionHub owns the pump
task behind each handle and guarantees:
- on_event runs at most once per change, in delivery order
- close() is idempotent and safe in every handle state
- after close() no further event reaches on_event

Invariants:
    - A handle is registered before its stream is opened, so it can be
      closed while opening is still in flight
    - on_event is synchronous; a store mutation cannot be interrupted
      by cancellation halfway through
    - Handles are never reused once closed

How to change safely:
    - Keep dispatch synchronous
    - Test close() from every state, including during open
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import StaleHandleError, SubscriptionError
from ..stream.base import ChangeEvent, ChangeFeed, ChangeStream, FeedError, RowFilter

logger = logging.getLogger(__name__)

EventCallback = Callable[[ChangeEvent], None]
ErrorCallback = Callable[["SubscriptionHandle", SubscriptionError], None]


class HandleState(str, Enum):
    """Lifecycle of a subscription handle."""

    PENDING = "pending"
    OPEN = "open"
    FAILED = "failed"
    CLOSED = "closed"


@dataclass(eq=False)
class SubscriptionHandle:
    """Opaque token for one active registration to a change stream.

    Attributes:
        handle_id: Unique id, never reused
        source: Table the subscription watches
        row_filter: Filter applied to every event
        state: Current lifecycle state
        error: Why the subscription failed, if it did
        delivered_count: Events passed to on_event
        filtered_count: Events dropped by the row filter
    """

    handle_id: str
    source: str
    row_filter: RowFilter | None
    on_event: EventCallback
    on_error: ErrorCallback | None = None
    state: HandleState = HandleState.PENDING
    error: SubscriptionError | None = None
    delivered_count: int = 0
    filtered_count: int = 0
    _stream: ChangeStream | None = field(default=None, repr=False)
    _task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def is_open(self) -> bool:
        return self.state == HandleState.OPEN

    @property
    def is_closed(self) -> bool:
        return self.state == HandleState.CLOSED

    def ensure_open(self) -> None:
        """Raise StaleHandleError unless the handle is open."""
        if self.state != HandleState.OPEN:
            raise StaleHandleError(
                f"Subscription {self.handle_id} is {self.state.value}",
                handle_id=self.handle_id,
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "handle_id": self.handle_id,
            "source": self.source,
            "filter": str(self.row_filter) if self.row_filter else None,
            "state": self.state.value,
            "error": self.error.message if self.error else None,
            "delivered_count": self.delivered_count,
            "filtered_count": self.filtered_count,
        }


class SubscriptionHub:
    """Opens and closes subscriptions on a change feed.

    Example:
        >>> hub = SubscriptionHub(feed)
        >>> handle = await hub.open("invoices", RowFilter.eq("user_id", "u1"), reconciler.reconcile)
        >>> await hub.close(handle)
        >>> await hub.close(handle)  # no-op
    """

    def __init__(self, feed: ChangeFeed) -> None:
        self.feed = feed
        self._handles: dict[str, SubscriptionHandle] = {}
        self._ids = itertools.count(1)

    @property
    def open_count(self) -> int:
        """Handles that are registered and not yet closed."""
        return len(self._handles)

    def register(
        self,
        source: str,
        row_filter: RowFilter | None,
        on_event: EventCallback,
        on_error: ErrorCallback | None = None,
    ) -> SubscriptionHandle:
        """Create a pending handle without touching the feed."""
        handle = SubscriptionHandle(
            handle_id=f"sub-{next(self._ids)}",
            source=source,
            row_filter=row_filter,
            on_event=on_event,
            on_error=on_error,
        )
        self._handles[handle.handle_id] = handle
        return handle

    async def start(self, handle: SubscriptionHandle) -> SubscriptionHandle:
        """Establish the stream behind a pending handle.

        If the handle is closed while the stream is being opened, the
        stream is closed as soon as it arrives.

        Raises:
            SubscriptionError: If the stream cannot be established
        """
        if handle.state != HandleState.PENDING:
            return handle

        try:
            stream = await self.feed.open_stream(handle.source, handle.row_filter)
        except FeedError as e:
            error = SubscriptionError(
                f"Could not subscribe to {handle.source}: {e}", source=handle.source
            )
            if handle.state != HandleState.CLOSED:
                handle.state = HandleState.FAILED
                handle.error = error
            self._handles.pop(handle.handle_id, None)
            logger.warning(
                "Subscription failed",
                extra={"handle_id": handle.handle_id, "source": handle.source, "error": str(e)},
            )
            raise error from e

        if handle.state == HandleState.CLOSED:
            await stream.close()
            logger.debug(
                "Subscription closed while opening",
                extra={"handle_id": handle.handle_id, "source": handle.source},
            )
            return handle

        handle._stream = stream
        handle.state = HandleState.OPEN
        handle._task = asyncio.create_task(
            self._pump(handle, stream), name=f"subscription-{handle.handle_id}"
        )
        logger.info(
            "Subscription opened",
            extra={
                "handle_id": handle.handle_id,
                "source": handle.source,
                "filter": str(handle.row_filter) if handle.row_filter else None,
            },
        )
        return handle

    async def open(
        self,
        source: str,
        row_filter: RowFilter | None,
        on_event: EventCallback,
        on_error: ErrorCallback | None = None,
    ) -> SubscriptionHandle:
        """Register and start a subscription.

        Raises:
            SubscriptionError: If the stream cannot be established
        """
        handle = self.register(source, row_filter, on_event, on_error)
        return await self.start(handle)

    async def _pump(self, handle: SubscriptionHandle, stream: ChangeStream) -> None:
        try:
            async for event in stream:
                try:
                    self.dispatch(handle, event)
                except StaleHandleError:
                    logger.debug(
                        "Event arrived after close; dropped",
                        extra={"handle_id": handle.handle_id, "source": handle.source},
                    )
                    break
        except FeedError as e:
            error = SubscriptionError(f"Change stream lost: {e}", source=handle.source)
            if handle.state == HandleState.OPEN:
                handle.state = HandleState.FAILED
                handle.error = error
                logger.error(
                    "Subscription stream failed",
                    extra={"handle_id": handle.handle_id, "source": handle.source, "error": str(e)},
                )
                if handle.on_error is not None:
                    try:
                        handle.on_error(handle, error)
                    except Exception as cb_error:
                        logger.error(f"Subscription error callback failed: {cb_error}", exc_info=True)
        finally:
            await stream.close()

    def dispatch(self, handle: SubscriptionHandle, event: ChangeEvent) -> bool:
        """Deliver one event through a handle.

        Returns:
            True if the event reached on_event

        Raises:
            StaleHandleError: If the handle is not open
        """
        handle.ensure_open()
        if event.source != handle.source or not event.passes(handle.row_filter):
            handle.filtered_count += 1
            return False

        handle.delivered_count += 1
        try:
            handle.on_event(event)
        except Exception as e:
            logger.error(
                f"Event handler failed: {e}",
                exc_info=True,
                extra={"handle_id": handle.handle_id, "source": handle.source},
            )
        return True

    async def close(self, handle: SubscriptionHandle) -> None:
        """Stop delivery on a handle. Idempotent."""
        if handle.state == HandleState.CLOSED:
            return

        previous = handle.state
        handle.state = HandleState.CLOSED
        self._handles.pop(handle.handle_id, None)

        task, handle._task = handle._task, None
        stream, handle._stream = handle._stream, None

        if task is not None and not task.done():
            task.cancel()
            if task is not asyncio.current_task():
                await asyncio.gather(task, return_exceptions=True)
        elif stream is not None:
            await stream.close()

        logger.info(
            "Subscription closed",
            extra={
                "handle_id": handle.handle_id,
                "source": handle.source,
                "previous_state": previous.value,
                "delivered_count": handle.delivered_count,
            },
        )

    async def close_all(self) -> None:
        for handle in list(self._handles.values()):
            await self.close(handle)
