import bisect
import itertools
import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Set

from internchat.controllers.outbox import Confirmed, Failed, Outbox, Pending, to_view
from internchat.errors import RepositoryError
from internchat.schemas.messaging import Attachment, Conversation, Message, NewMessage, Viewer
from internchat.schemas.views import ControllerState, ConversationView
from internchat.services.chat_service import ChatService


logger = logging.getLogger(__name__)

ViewListener = Callable[[ConversationView], None]


def default_reconcile_window() -> timedelta:
    return timedelta(seconds=float(os.getenv("INTERNCHAT_RECONCILE_WINDOW_SECONDS", "30")))


class ConversationController:
    """State owner for one messages screen.

    Every mutation of the conversation list, the selection, the message
    list and the live subscription happens here. Results of awaited calls
    are checked against the request token taken before the await, so a
    late response for a selection (or a mount) that is no longer current
    is dropped.
    """

    def __init__(
        self,
        service: ChatService,
        reconcile_window: Optional[timedelta] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._service = service
        self._window = reconcile_window if reconcile_window is not None else default_reconcile_window()
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._viewer: Optional[Viewer] = None
        self._state = ControllerState.IDLE
        self._conversations: List[Conversation] = []
        self._selected_id: Optional[str] = None
        self._messages: List[Message] = []
        self._message_ids: Set[str] = set()
        self._outbox = Outbox()
        self._subscription = None
        self._error: Optional[RepositoryError] = None
        self._subscription_error: Optional[RepositoryError] = None
        self._list_token = 0
        self._fetch_token = 0
        self._temp_ids = itertools.count(1)
        self._listeners: List[ViewListener] = []

    @property
    def state(self) -> ControllerState:
        return self._state

    @property
    def viewer(self) -> Optional[Viewer]:
        return self._viewer

    @property
    def selected_conversation_id(self) -> Optional[str]:
        return self._selected_id

    @property
    def has_live_subscription(self) -> bool:
        return self._subscription is not None

    def add_listener(self, listener: ViewListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def view(self) -> ConversationView:
        entries = [to_view(Confirmed(m)) for m in self._messages]
        entries.extend(to_view(entry) for entry in self._outbox.entries(self._selected_id))
        # stable: equal timestamps keep confirmed-then-submission order
        entries.sort(key=lambda entry: entry.message.timestamp)
        selected = self._find_conversation(self._selected_id)
        return ConversationView(
            state=self._state,
            conversations=list(self._conversations),
            selected_conversation=selected,
            counterpart=self._viewer.counterpart(selected) if self._viewer and selected else None,
            messages=entries,
            error=self._error.message if self._error else None,
            subscription_error=self._subscription_error.message if self._subscription_error else None,
            total_unread=sum(c.unread_count for c in self._conversations),
        )

    # lifecycle

    async def mount(self, viewer: Viewer) -> None:
        """Bind the screen to ``viewer`` (first mount or user change) and load the conversation list."""
        self._release_subscription()
        self._fetch_token += 1
        self._viewer = viewer
        self._conversations = []
        self._selected_id = None
        self._reset_messages()
        self._outbox = Outbox()
        self._error = None
        self._subscription_error = None
        self._state = ControllerState.LOADING_CONVERSATIONS
        self._notify()

        self._list_token += 1
        token = self._list_token
        try:
            conversations = await self._service.list_conversations(viewer.user_id)
        except RepositoryError as exc:
            if token != self._list_token:
                return
            logger.warning("Could not load conversations for %s: %s", viewer.user_id, exc)
            self._error = exc
            self._state = ControllerState.IDLE
            self._notify()
            return
        if token != self._list_token:
            return
        self._conversations = conversations
        if self._state is ControllerState.LOADING_CONVERSATIONS:
            self._state = ControllerState.CONVERSATIONS_READY
        self._notify()

    def unmount(self) -> None:
        self._release_subscription()
        # late results from calls started before teardown must not reopen a channel
        self._list_token += 1
        self._fetch_token += 1
        self._viewer = None
        self._state = ControllerState.IDLE
        self._listeners.clear()

    async def refresh_conversations(self) -> None:
        """Re-read the list so optimistic unread counts are replaced by the stored ones."""
        if self._viewer is None or self._state in (ControllerState.IDLE, ControllerState.LOADING_CONVERSATIONS):
            return
        self._list_token += 1
        token = self._list_token
        try:
            conversations = await self._service.list_conversations(self._viewer.user_id)
        except RepositoryError as exc:
            if token == self._list_token:
                self._error = exc
                self._notify()
            return
        if token != self._list_token:
            return
        self._conversations = conversations
        self._notify()

    # selection

    async def select_conversation(self, conversation_id: Optional[str]) -> None:
        self._release_subscription()
        self._fetch_token += 1
        token = self._fetch_token
        self._selected_id = conversation_id
        self._reset_messages()
        self._subscription_error = None

        viewer = self._viewer
        if conversation_id is None or viewer is None:
            if self._state is not ControllerState.IDLE:
                self._state = ControllerState.CONVERSATIONS_READY
            self._notify()
            return

        self._state = ControllerState.LOADING_MESSAGES
        self._notify()
        try:
            messages = await self._service.list_messages(conversation_id, reader_id=viewer.user_id)
        except RepositoryError as exc:
            if token != self._fetch_token:
                return
            logger.warning("Could not load messages of %s: %s", conversation_id, exc)
            self._error = exc
            self._state = ControllerState.CONVERSATIONS_READY
            self._notify()
            return
        if token != self._fetch_token:
            logger.debug("Discarding stale messages of %s", conversation_id)
            return

        self._error = None
        for message in messages:
            self._insert(message)
        self._state = ControllerState.MESSAGES_READY
        self._subscription = self._service.subscribe_to_messages(
            conversation_id,
            self._on_push,
            lambda exc: self._on_subscription_error(conversation_id, exc),
        )
        self._notify()

        try:
            await self._service.mark_conversation_as_read(conversation_id, viewer.user_id)
        except RepositoryError as exc:
            logger.warning("Could not mark %s as read: %s", conversation_id, exc)
            return
        if token != self._fetch_token:
            return
        self._update_conversation(conversation_id, unread_count=0)
        self._notify()

    async def reconnect(self) -> None:
        """Fetch and subscribe again after the push channel dropped."""
        if self._selected_id is None or self._subscription is not None:
            return
        await self.select_conversation(self._selected_id)

    # sending

    async def send_message(self, content: str, attachment: Optional[Attachment] = None) -> Optional[str]:
        """Queue a message for the selected conversation and deliver it.

        Returns the temporary id of the optimistic entry, or None when
        there was nothing to send.
        """
        text = (content or "").strip()
        viewer = self._viewer
        if viewer is None or self._selected_id is None or (not text and attachment is None):
            return None

        temp_id = f"temp-{next(self._temp_ids)}"
        draft = Message(
            id=temp_id,
            conversation_id=self._selected_id,
            sender_id=viewer.user_id,
            sender_role=viewer.role,
            content=text,
            attachment=attachment,
            timestamp=self._next_timestamp(self._selected_id),
            is_read=True,
        )
        self._outbox.add(Pending(temp_id, draft))
        self._update_conversation(draft.conversation_id, last_message=draft.preview, last_message_time=draft.timestamp)
        self._notify()
        await self._deliver(temp_id)
        return temp_id

    async def retry_message(self, temp_id: str) -> bool:
        entry = self._outbox.find(temp_id)
        if not isinstance(entry, Failed):
            return False
        draft = entry.message.model_copy(update={"timestamp": self._next_timestamp(entry.message.conversation_id)})
        self._outbox.replace(temp_id, Pending(temp_id, draft))
        self._notify()
        await self._deliver(temp_id)
        return True

    def discard_message(self, temp_id: str) -> bool:
        entry = self._outbox.find(temp_id)
        if not isinstance(entry, Failed):
            return False
        self._outbox.remove(temp_id)
        self._notify()
        return True

    async def _deliver(self, temp_id: str) -> None:
        entry = self._outbox.find(temp_id)
        if not isinstance(entry, Pending):
            return
        draft = entry.message
        try:
            stored = await self._service.send_message(
                NewMessage(
                    conversation_id=draft.conversation_id,
                    sender_id=draft.sender_id,
                    sender_role=draft.sender_role,
                    content=draft.content,
                    attachment=draft.attachment,
                )
            )
        except RepositoryError as exc:
            current = self._outbox.find(temp_id)
            if isinstance(current, Pending):
                logger.warning("Sending %s to %s failed: %s", temp_id, draft.conversation_id, exc)
                self._outbox.replace(temp_id, Failed(temp_id, current.message, exc))
                self._notify()
            return

        # a push for the same message may already have claimed the entry
        self._outbox.remove(temp_id)
        if stored.conversation_id == self._selected_id and stored.id not in self._message_ids:
            self._insert(stored)
        self._update_conversation(stored.conversation_id, last_message=stored.preview, last_message_time=stored.timestamp)
        self._notify()

    # push channel

    def _on_push(self, message: Message) -> None:
        if message.conversation_id != self._selected_id or message.id in self._message_ids:
            return
        if self._viewer is not None and message.sender_id == self._viewer.user_id:
            claimed = self._outbox.claim(message, self._window)
            if claimed is not None:
                logger.debug("Push %s confirmed %s", message.id, claimed.temp_id)
        self._insert(message)
        self._update_conversation(message.conversation_id, last_message=message.preview, last_message_time=message.timestamp)
        self._notify()

    def _on_subscription_error(self, conversation_id: str, exc: RepositoryError) -> None:
        if conversation_id != self._selected_id:
            return
        self._release_subscription()
        self._subscription_error = exc
        self._notify()

    def _release_subscription(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.unsubscribe()

    # state helpers

    def _reset_messages(self) -> None:
        self._messages = []
        self._message_ids = set()

    def _insert(self, message: Message) -> None:
        if message.id in self._message_ids:
            return
        bisect.insort_right(self._messages, message, key=lambda m: m.timestamp)
        self._message_ids.add(message.id)

    def _next_timestamp(self, conversation_id: str) -> datetime:
        # keeps rapid sends in submission order even if the clock stalls
        latest = [m.timestamp for m in self._messages[-1:]]
        latest.extend(entry.message.timestamp for entry in self._outbox.entries(conversation_id))
        now = self._clock()
        return max([now, *latest])

    def _find_conversation(self, conversation_id: Optional[str]) -> Optional[Conversation]:
        if conversation_id is None:
            return None
        for conversation in self._conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    def _update_conversation(self, conversation_id: str, **changes) -> None:
        current = self._find_conversation(conversation_id)
        if current is None:
            return
        last_time = changes.get("last_message_time")
        if last_time is not None and current.last_message_time is not None and last_time < current.last_message_time:
            changes.pop("last_message")
            changes.pop("last_message_time")
        if not changes:
            return
        updated = current.model_copy(update=changes)
        self._conversations = [updated if c.id == conversation_id else c for c in self._conversations]

    def _notify(self) -> None:
        if not self._listeners:
            return
        view = self.view()
        for listener in list(self._listeners):
            listener(view)
