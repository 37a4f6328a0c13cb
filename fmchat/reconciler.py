"""
Folds a streamed model response into a single in-flight assistant message.

One ``send`` walks Idle -> Drafting -> Awaiting -> Streaming and ends in
Completed, Failed or Cancelled. Every stream is tagged with the
conversation and message it was started for (``StreamSubscription``);
before applying an event the reconciler resolves that identity against
the store again, so events that arrive after a conversation was switched
away from or deleted are dropped instead of touching stale state.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field

from .availability import AvailabilityMonitor
from .config import STREAM_CHUNK_IDLE_TIMEOUT_SECONDS, STREAM_FIRST_CHUNK_TIMEOUT_SECONDS
from .models import Conversation, Message
from .sessions import SessionHandle, SessionManager
from .store import ConversationStore

logger = logging.getLogger("fmchat")


class SendOutcome(enum.Enum):
    IGNORED = "ignored"
    UNAVAILABLE = "unavailable"
    BUSY = "busy"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


def _absorb_cancel_request() -> bool:
    """Withdraw one cancel request on the current task. True if none remain."""
    task = asyncio.current_task()
    if task is None or not task.cancelling():
        return True
    return task.uncancel() == 0


@dataclass
class StreamSubscription:
    """Identity of the message a running stream is allowed to write to.

    ``task`` is the task consuming the stream. Cancelling the subscription
    from anywhere else also cancels that task, so the model stops generating
    instead of running until its next event or timeout.
    """

    conversation_id: str
    message_id: str
    cancelled: bool = False
    task: asyncio.Task | None = field(default=None, repr=False, compare=False)
    task_cancelled: bool = False

    def cancel(self) -> None:
        self.cancelled = True
        task = self.task
        if task is None or task.done():
            return
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is not current:
            self.task_cancelled = True
            task.cancel()


class StreamingReconciler:
    def __init__(
        self,
        store: ConversationStore,
        sessions: SessionManager,
        monitor: AvailabilityMonitor,
        *,
        first_chunk_timeout: float | None = STREAM_FIRST_CHUNK_TIMEOUT_SECONDS,
        idle_timeout: float | None = STREAM_CHUNK_IDLE_TIMEOUT_SECONDS,
        on_change: Callable[[], None] | None = None,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.monitor = monitor
        self.first_chunk_timeout = first_chunk_timeout
        self.idle_timeout = idle_timeout
        self.on_change = on_change
        self.error_message: str | None = None
        self._active: dict[str, StreamSubscription] = {}

    @property
    def is_generating(self) -> bool:
        return bool(self._active)

    @property
    def cumulative(self) -> bool:
        return bool(getattr(self.sessions.backend, "cumulative_snapshots", True))

    def is_active(self, conversation_id: str) -> bool:
        return conversation_id in self._active

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change()

    async def send(self, conversation: Conversation, text: str) -> SendOutcome:
        """Run one request for ``conversation``. Never raises for model errors."""
        prompt = text.strip()
        if not prompt:
            return SendOutcome.IGNORED

        if conversation.id in self._active:
            logger.warning(
                "[FMChat Stream] Rejecting send: a reply is already streaming for %s.",
                conversation.id,
            )
            return SendOutcome.BUSY

        state = self.monitor.check()
        if not state.available:
            self.error_message = state.message
            self._notify()
            return SendOutcome.UNAVAILABLE

        # Drafting
        conversation.append(Message(content=prompt, is_from_user=True))
        self.store.upsert(conversation)
        self.store.save()

        # Awaiting
        placeholder = Message(content="", is_from_user=False)
        conversation.append(placeholder)
        subscription = StreamSubscription(
            conversation.id, placeholder.id, task=asyncio.current_task()
        )
        self._active[conversation.id] = subscription
        self.store.mark_in_flight(placeholder.id)
        self.error_message = None
        self.store.upsert(conversation)
        self._notify()

        try:
            handle = self.sessions.ensure_session(conversation.id)
            await self._consume(handle, subscription, prompt)
        except asyncio.CancelledError:
            # Our own cancel() stops the task; anything else propagates.
            if subscription.task_cancelled and _absorb_cancel_request():
                return SendOutcome.CANCELLED
            self._discard(subscription)
            raise
        except Exception as exc:
            if subscription.cancelled:
                if subscription.task_cancelled:
                    _absorb_cancel_request()
                logger.debug(
                    "[FMChat Stream] Ignoring error from cancelled stream for %s: %s",
                    subscription.conversation_id,
                    exc,
                )
                return SendOutcome.CANCELLED
            self._fail(subscription, exc)
            return SendOutcome.FAILED
        finally:
            self.store.clear_in_flight(placeholder.id)
            if self._active.get(subscription.conversation_id) is subscription:
                del self._active[subscription.conversation_id]
            self._notify()

        if subscription.cancelled:
            return SendOutcome.CANCELLED

        # Completed
        target = self.store.get(subscription.conversation_id)
        if target is not None:
            target.touch()
        self.store.save()
        logger.debug("[FMChat Stream] Reply completed for %s.", subscription.conversation_id)
        return SendOutcome.COMPLETED

    def cancel(self, conversation_id: str) -> bool:
        """Stop applying events for ``conversation_id`` and remove its in-flight message."""
        subscription = self._active.pop(conversation_id, None)
        if subscription is None:
            return False
        subscription.cancel()
        self._discard(subscription)
        logger.info("[FMChat Stream] Cancelled streaming reply for %s.", conversation_id)
        return True

    def cancel_all(self, *, except_id: str | None = None) -> None:
        for conversation_id in list(self._active):
            if conversation_id != except_id:
                self.cancel(conversation_id)

    # -- internals -----------------------------------------------------------

    def _target(self, subscription: StreamSubscription) -> Message | None:
        if subscription.cancelled:
            return None
        conversation = self.store.get(subscription.conversation_id)
        if conversation is None:
            return None
        return conversation.find_message(subscription.message_id)

    async def _consume(
        self, handle: SessionHandle, subscription: StreamSubscription, prompt: str
    ) -> None:
        iterator = handle.session.stream_response(prompt).__aiter__()
        cumulative = self.cumulative
        timeout = self.first_chunk_timeout
        label = "first response chunk"
        content = ""
        try:
            while True:
                try:
                    snapshot = await self._next(iterator, timeout, label)
                except StopAsyncIteration:
                    break

                message = self._target(subscription)
                if message is None:
                    logger.debug(
                        "[FMChat Stream] Dropping late event for %s.", subscription.conversation_id
                    )
                    subscription.cancel()
                    break

                content = snapshot if cumulative else content + snapshot
                message.content = content
                conversation = self.store.get(subscription.conversation_id)
                conversation.touch()
                self.store.upsert(conversation)
                self._notify()

                timeout = self.idle_timeout
                label = "response stream"
        except Exception:
            # A cancelled stream must not drop a session another send now owns.
            if not subscription.cancelled and self.sessions.handle is handle:
                self.sessions.invalidate()
            raise
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                with contextlib.suppress(Exception):
                    await aclose()

    @staticmethod
    async def _next(iterator: AsyncIterator[str], timeout: float | None, label: str) -> str:
        if timeout is None:
            return str(await iterator.__anext__())
        try:
            return str(await asyncio.wait_for(iterator.__anext__(), timeout=timeout))
        except TimeoutError as exc:
            raise TimeoutError(f"Timed out waiting for {label} after {timeout:.0f}s.") from exc

    def _discard(self, subscription: StreamSubscription) -> None:
        conversation = self.store.get(subscription.conversation_id)
        if conversation is not None and conversation.remove_message(subscription.message_id):
            self.store.upsert(conversation)
            self.store.save()

    def _fail(self, subscription: StreamSubscription, exc: BaseException) -> None:
        logger.error(
            "[FMChat Stream] Reply failed for %s: %s", subscription.conversation_id, exc
        )
        self.error_message = f"Failed to generate response: {exc}"
        conversation = self.store.get(subscription.conversation_id)
        if conversation is not None:
            conversation.remove_message(subscription.message_id)
            self.store.upsert(conversation)
        self.store.save()
