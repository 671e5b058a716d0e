import asyncio
import json
import re
import uuid
from typing import Any, Callable, Dict, List, Optional, Set

from chatstream_service.core.errors import CardTransitionError
from chatstream_service.core.interfaces import AuthorizationPolicy, MessageStore
from chatstream_service.core.logging import logger
from chatstream_service.core.tasks import drain_tasks, fire_and_forget
from chatstream_service.core.types import CardStatus, LifecycleEventType, ToolCallCard
from chatstream_service.protocol.parsers.args import normalize_arguments

CARD_MARKER_KEY = "__tool_call_card__"

_ALLOWED = {
    CardStatus.PENDING_AUTH: {CardStatus.RUNNING, CardStatus.FAILED},
    CardStatus.RUNNING: {CardStatus.SUCCEEDED, CardStatus.FAILED},
    CardStatus.SUCCEEDED: set(),
    CardStatus.FAILED: set(),
}

_MARKER_LINE_RE = re.compile(r'^\{"%s":.*\}$' % CARD_MARKER_KEY, re.MULTILINE)

CardCallback = Callable[[ToolCallCard], Any]


def card_marker(card: ToolCallCard) -> str:
    """Single-line marker the rendering surface replaces with the card."""
    return json.dumps({CARD_MARKER_KEY: card.to_dict()}, ensure_ascii=False, separators=(",", ":"))


def find_card_markers(content: str) -> List[Dict[str, Any]]:
    """Card payloads embedded in message content, in order of appearance."""
    cards = []
    for m in _MARKER_LINE_RE.finditer(content or ""):
        try:
            payload = json.loads(m.group(0))
        except ValueError:
            continue
        card = payload.get(CARD_MARKER_KEY)
        if isinstance(card, dict):
            cards.append(card)
    return cards


class ToolCallLifecycleManager:
    """
    Owns the cards of one streamed reply.
    handle() turns a decoded invocation into a card (pending_auth or running),
    embeds its marker in the message and fires the auto-execute or
    authorization-request callback without waiting for it.
    """

    def __init__(
        self,
        message_id: str,
        store: MessageStore,
        policy: AuthorizationPolicy,
        on_auto_execute: Optional[CardCallback] = None,
        on_request_authorization: Optional[CardCallback] = None,
        id_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        self.message_id = message_id
        self.store = store
        self.policy = policy
        self.on_auto_execute = on_auto_execute
        self.on_request_authorization = on_request_authorization
        self.id_factory = id_factory
        self.cards: Dict[str, ToolCallCard] = {}
        self._active: Optional[ToolCallCard] = None
        self._tasks: Set[asyncio.Task] = set()

    def handle(self, server_name: str, tool_name: str, arguments: Any = None) -> Optional[str]:
        server = (server_name or "").strip()
        tool = (tool_name or "").strip()
        if not server or not tool:
            logger.warning(f"Lifecycle: invalid tool call, server={server_name!r} tool={tool_name!r}")
            return None
        if self._active is not None and not self._active.status.is_terminal:
            logger.debug(f"Lifecycle: card {self._active.id} still unresolved, ignoring {server}.{tool}")
            return None

        args = normalize_arguments(arguments)
        auto = self._auto_authorize(server)
        card = ToolCallCard(
            id=self.id_factory(),
            server=server,
            tool=tool,
            message_id=self.message_id,
            status=CardStatus.RUNNING if auto else CardStatus.PENDING_AUTH,
            arguments=args,
        )
        self.cards[card.id] = card
        self._active = card
        logger.info(f"Lifecycle: card {card.id} created for {server}.{tool}, status={card.status}")

        self._embed_marker(card)
        self._dispatch(LifecycleEventType.CARD_CREATED, card)
        if auto:
            self._fire(self.on_auto_execute, card, "auto-execute callback")
        else:
            self._fire(self.on_request_authorization, card, "authorization-request callback")
        return card.id

    def authorize(self, card_id: str) -> ToolCallCard:
        """User approved a pending card: start it."""
        card = self._transition(card_id, CardStatus.RUNNING)
        self._fire(self.on_auto_execute, card, "auto-execute callback")
        return card

    def deny(self, card_id: str, reason: str = "denied") -> ToolCallCard:
        return self._transition(card_id, CardStatus.FAILED, error=reason)

    def complete(self, card_id: str, result: Any = None) -> ToolCallCard:
        return self._transition(card_id, CardStatus.SUCCEEDED, result=result)

    def fail(self, card_id: str, error: str) -> ToolCallCard:
        return self._transition(card_id, CardStatus.FAILED, error=error)

    async def drain(self) -> None:
        """Wait for outstanding callbacks."""
        await drain_tasks(self._tasks)

    # --- internals ---

    def _auto_authorize(self, server: str) -> bool:
        try:
            return bool(self.policy.should_auto_authorize(server))
        except Exception:
            logger.exception(f"Lifecycle: authorization policy failed for {server}, asking the user")
            return False

    def _transition(self, card_id: str, target: CardStatus, error: Optional[str] = None, result: Any = None) -> ToolCallCard:
        card = self.cards[card_id]
        if target not in _ALLOWED[card.status]:
            raise CardTransitionError(card_id, card.status.value, target.value)
        card.status = target
        if error is not None:
            card.error = error
        if result is not None:
            card.result = result
        logger.info(f"Lifecycle: card {card_id} -> {target}")
        self._dispatch(LifecycleEventType.CARD_STATUS, card)
        return card

    def _embed_marker(self, card: ToolCallCard) -> None:
        try:
            prev = self.store.get_content(self.message_id) or ""
            marker = card_marker(card)
            # the marker sits on its own line; later prose continues below it
            sep = "\n" if prev and not prev.endswith("\n") else ""
            self.store.overwrite_content(self.message_id, prev + sep + marker + "\n")
        except Exception:
            logger.exception(f"Lifecycle: embedding marker for card {card.id} failed")

    def _dispatch(self, event_type: LifecycleEventType, card: ToolCallCard) -> None:
        try:
            self.store.dispatch_lifecycle_event(self.message_id, {"type": event_type, "data": card.to_dict()})
        except Exception:
            logger.exception(f"Lifecycle: dispatching {event_type} failed")

    def _fire(self, callback: Optional[CardCallback], card: ToolCallCard, label: str) -> None:
        if callback is None:
            return
        fire_and_forget(callback, card, tasks=self._tasks, label=label)
