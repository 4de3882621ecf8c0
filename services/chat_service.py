"""
Chat Service: Request Pipeline between the Caller and the LLM Vendor

Every request runs the same ordered gate sequence:
1. Admission control on the ``llm`` resource
2. Input validation and injection screening
3. Layered prompt assembly
4. Token pre-flight against the safety-margined budget
5. Vendor completion
6. Output screening
7. Cost accounting and cache keep-alive

Any gate failure aborts the request with a typed error; nothing after an
injection or admission rejection is billed.

Approvals of generated turns are also handled here and published as
domain events for knowledge promotion and pattern learning.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from loguru import logger

from config.constants import Collections
from core.enums import ProtectedResource
from core.exceptions import EntityNotFoundError, PermissionDeniedError
from core.models import Actor, ChatTurn, CostBreakdown, UsageRecord, utcnow
from infrastructure.document_store import DocumentStore
from infrastructure.llm_client import AbstractLLMClient
from optimization.cache_warmer import CacheWarmer
from optimization.cost_accountant import CostAccountant
from optimization.prompt_cache import PromptCacheBuilder, check_token_budget
from optimization.rate_limiter import AdmissionController, caller_key
from orchestration.events import ChatApproved, ChatEdited, EventBus
from security import SecurityGate


@dataclass
class ChatRequest:
    partition_id: str
    message: str
    session_id: Optional[str] = None
    history: List[Dict[str, str]] = field(default_factory=list)


@dataclass
class ChatResult:
    chat_id: str
    text: str
    usage: UsageRecord
    cost: CostBreakdown
    cache_hit_rate: float
    cost_savings: float
    model: str


class ChatService:
    """
    Service layer for advisory chat.

    Usage:
        service = ChatService(store, admission, gate, builder, llm, accountant, warmer, bus)
        result = await service.process(actor, ChatRequest(partition_id="p1", message="..."))
    """

    def __init__(
        self,
        store: DocumentStore,
        admission: AdmissionController,
        gate: SecurityGate,
        builder: PromptCacheBuilder,
        llm_client: AbstractLLMClient,
        accountant: CostAccountant,
        warmer: CacheWarmer,
        event_bus: Optional[EventBus] = None,
    ):
        self.store = store
        self.admission = admission
        self.gate = gate
        self.builder = builder
        self.llm = llm_client
        self.accountant = accountant
        self.warmer = warmer
        self.events = event_bus

    async def process(self, actor: Actor, request: ChatRequest) -> ChatResult:
        """
        Run one request through the gate sequence.

        Raises:
            RateLimitExceededError: admission denied
            InputValidationError / InjectionDetectedError: input rejected
            TokenLimitExceededError: pre-flight estimate too large
            VendorError: vendor call failed
            OutputValidationFailedError: generated text rejected
        """
        await self.admission.enforce(ProtectedResource.LLM, caller_key(actor.uid, actor.ip_address))

        message = await self.gate.check_input(request.message, actor, request.partition_id)

        segments = await self.builder.build(request.partition_id, message)
        messages = [*request.history, {"role": "user", "content": message}]
        check_token_budget(segments, messages)

        completion = await self.llm.complete(segments, messages)

        await self.gate.check_output(completion.text, actor, request.partition_id)

        report = await self.accountant.record(
            completion.usage,
            partition_id=request.partition_id,
            actor_id=actor.uid,
            model=completion.model,
        )

        if request.session_id:
            self.warmer.touch(request.session_id)

        turn = ChatTurn(
            partition_id=request.partition_id,
            question=message,
            response=completion.text,
            approved=False,
        )
        await self.store.set(
            Collections.CHATS,
            turn.id,
            {**turn.to_document(), "actor_id": actor.uid, "created_at": utcnow()},
        )

        return ChatResult(
            chat_id=turn.id,
            text=completion.text,
            usage=completion.usage,
            cost=report.breakdown,
            cache_hit_rate=report.hit_rate,
            cost_savings=report.savings,
            model=completion.model,
        )

    async def approve(self, actor: Actor, chat_id: str, final_text: Optional[str] = None) -> ChatTurn:
        """
        Approve a generated turn, optionally with a human-edited final text.

        The approval and, when the text changed, the edit are published
        as domain events. Approving an already approved turn is a no-op:
        the stored turn is returned unchanged and no events are published,
        so the model draft and the knowledge entry are kept as they are.

        Raises:
            PermissionDeniedError: anonymous caller
            EntityNotFoundError: unknown chat
        """
        if not actor.uid:
            raise PermissionDeniedError("Authentication required")

        data = await self.store.get(Collections.CHATS, chat_id)
        if data is None:
            raise EntityNotFoundError(Collections.CHATS, chat_id)
        turn = ChatTurn.from_document(chat_id, data)
        if turn.approved:
            logger.info(f"Chat already approved, ignoring | chat={chat_id} | actor={actor.uid}")
            return turn

        edited = final_text is not None and final_text != turn.response
        changes = {
            "approved": True,
            "approved_at": utcnow(),
            "approved_by": actor.uid,
        }
        if edited:
            changes.update(
                {
                    "original_response": turn.response,
                    "response": final_text,
                    "edited": True,
                }
            )
        await self.store.update(Collections.CHATS, chat_id, changes)
        approved = turn.model_copy(update=changes)
        logger.info(f"Chat approved | chat={chat_id} | edited={edited} | actor={actor.uid}")

        if self.events is not None:
            if edited:
                await self.events.publish(ChatEdited(approved))
            await self.events.publish(ChatApproved(approved))
        return approved

    async def open_session(self, actor: Actor, session_id: str, partition_id: str) -> bool:
        """
        Start the cache keep-alive for a session owned by ``actor``.

        Raises:
            PermissionDeniedError: anonymous caller, or the session belongs to someone else
            RateLimitExceededError: admission denied on the general resource
        """
        await self._admit_session_call(actor, session_id)
        return self.warmer.start(session_id, partition_id, owner=actor.uid)

    async def close_session(self, actor: Actor, session_id: str) -> bool:
        await self._admit_session_call(actor, session_id)
        return await self.warmer.stop(session_id)

    async def _admit_session_call(self, actor: Actor, session_id: str) -> None:
        if not actor.uid:
            raise PermissionDeniedError("Authentication required")
        await self.admission.enforce(ProtectedResource.GENERAL, caller_key(actor.uid, actor.ip_address))

        owner = self.warmer.owner_of(session_id)
        if owner is not None and owner != actor.uid and not actor.is_admin:
            raise PermissionDeniedError(
                f"Session {session_id} belongs to another user", actor_id=actor.uid
            )
