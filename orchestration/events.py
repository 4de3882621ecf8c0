"""
Domain events for knowledge reactions.

Approvals and edits of chat turns are published as named events and
consumed by explicitly subscribed handlers, so the knowledge components
run the same way under tests, the API, or a store-trigger adapter.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional, Type

from loguru import logger

from core.models import ChatTurn
from infrastructure.document_store import DocumentStore
from knowledge.deduplication import DeduplicationEngine
from knowledge.knowledge_repository import PatternRepository
from knowledge.pattern_extractor import PatternExtractor, TextPair
from orchestration.batch_jobs import record_error_log


@dataclass(frozen=True)
class ChatApproved:
    turn: ChatTurn


@dataclass(frozen=True)
class ChatEdited:
    turn: ChatTurn


Handler = Callable[[object], Awaitable[None]]


class EventBus:
    """In-process publish/subscribe; handlers run sequentially in subscription order."""

    def __init__(self, store: Optional[DocumentStore] = None):
        self._store = store
        self._handlers: Dict[Type, List[Handler]] = {}

    def subscribe(self, event_type: Type, handler: Handler) -> None:
        self._handlers.setdefault(event_type, []).append(handler)

    async def publish(self, event: object) -> int:
        """
        Deliver an event to every subscriber of its type.

        A failing handler is logged and recorded; the remaining handlers
        still run.

        Returns:
            Number of handlers that completed
        """
        delivered = 0
        for handler in self._handlers.get(type(event), []):
            try:
                await handler(event)
                delivered += 1
            except Exception as e:
                name = getattr(handler, "__name__", repr(handler))
                logger.error(f"Event handler failed | event={type(event).__name__} | handler={name} | error={e}")
                if self._store is not None:
                    await record_error_log(
                        self._store,
                        f"event:{type(event).__name__}",
                        e,
                        {"handler": name, "chat_id": getattr(getattr(event, "turn", None), "id", None)},
                    )
        return delivered


def register_knowledge_handlers(
    bus: EventBus,
    engine: DeduplicationEngine,
    extractor: PatternExtractor,
    patterns: PatternRepository,
) -> None:
    """Wire approval to promotion and edits to single-pair pattern extraction."""

    async def promote_approved(event: ChatApproved) -> None:
        outcome = await engine.promote(event.turn)
        logger.debug(f"Promoted chat {event.turn.id} via {outcome.tier.value} tier")

    async def learn_from_edit(event: ChatEdited) -> None:
        pair = TextPair.from_turn(event.turn)
        if not pair.was_edited:
            return
        candidates = extractor.extract([pair])
        await patterns.apply_candidates(event.turn.partition_id, candidates, [event.turn.id])

    bus.subscribe(ChatApproved, promote_approved)
    bus.subscribe(ChatEdited, learn_from_edit)
