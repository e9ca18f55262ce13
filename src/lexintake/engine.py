"""Conversation engine: runs the intake state machine for one bot.

Owns the bot's clients, conversations and message log, calls the LLM and
triage collaborators, and keeps a small retry queue so a failed turn is
re-attempted in the background while the user gets an immediate
"busy" apology.
"""

from __future__ import annotations

import functools
import itertools
import json
import random
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import replace
from datetime import datetime
from typing import Any

import anyio
from anyio.abc import TaskGroup

from . import prompts
from .flow import (
    AppendTurn,
    CaseVerdict,
    Effect,
    MarkNeedsMoreInfo,
    Reply,
    ReplyKind,
    StoreAnalysis,
    StoreCompletion,
    StoreEmail,
    StoreName,
    StorePreanalysis,
    Transition,
    TurnInput,
    needs_verdict,
    transition,
)
from .llm import LLMError, LLMProvider, LLMUnavailableError
from .logging import get_logger
from .model import (
    Client,
    Conversation,
    ConversationState,
    Message,
    MessageDirection,
    RetryTask,
    TriageAnalysis,
    utcnow,
)
from .scheduler import Sleep, Timer
from .settings import ConversationSettings
from .triage import TriageCollaborator

logger = get_logger(__name__)

RetryCallback = Callable[[str, str], Awaitable[None]]

_STATIC_REPLIES = {
    ReplyKind.CLOSING: prompts.CLOSING,
    ReplyKind.FORCED_CLOSING: prompts.CLOSING,
    ReplyKind.DECLINED: prompts.DECLINED,
    ReplyKind.REASSURANCE: prompts.REASSURANCE,
}

_TRIAGE_STATES = frozenset(
    {ConversationState.AWAITING_PREANALYSIS_DECISION, ConversationState.COMPLETED}
)


class ConversationEngine:
    """Per-bot intake dialogue with background retries."""

    def __init__(
        self,
        *,
        llm: LLMProvider,
        triage: TriageCollaborator,
        assistant_name: str = "Ana",
        settings: ConversationSettings | None = None,
        rng: random.Random | None = None,
        sleep: Sleep = anyio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._llm = llm
        self._triage = triage
        self.assistant_name = assistant_name
        self.settings = settings or ConversationSettings()
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._clock = clock

        self._clients: dict[str, Client] = {}
        self._conversations: dict[str, Conversation] = {}
        self._active: dict[str, str] = {}
        self._messages: dict[str, list[Message]] = {}
        self._triages: list[dict[str, Any]] = []
        self._triaged: set[str] = set()
        self._message_ids = itertools.count(1)
        self._locks: dict[str, anyio.Lock] = {}

        self._retries: dict[str, RetryTask] = {}
        self._timer: Timer | None = None
        self.on_retry_success: RetryCallback | None = None
        self.on_retry_failed: RetryCallback | None = None

    # --- retry queue ---

    def attach(self, task_group: TaskGroup) -> None:
        """Give the retry queue a task group to run its timers on."""
        self._timer = Timer(task_group, sleep=self._sleep)
        for task in list(self._retries.values()):
            self._schedule_retry(task)

    def detach(self) -> None:
        if self._timer is not None:
            self._timer.cancel_all()
        self._timer = None

    def set_retry_callbacks(
        self,
        on_success: RetryCallback | None,
        on_failed: RetryCallback | None,
    ) -> None:
        self.on_retry_success = on_success
        self.on_retry_failed = on_failed

    @property
    def pending_retries(self) -> list[RetryTask]:
        return list(self._retries.values())

    def _enqueue_retry(self, phone: str, text: str, display_name: str | None) -> RetryTask:
        key = f"{phone}_{int(time.time() * 1000)}"
        while key in self._retries:
            key += "_"
        task = RetryTask(
            key=key,
            phone=phone,
            text=text,
            display_name=display_name,
            max_attempts=self.settings.retry_max_attempts,
        )
        self._retries[key] = task
        self._schedule_retry(task)
        return task

    def _schedule_retry(self, task: RetryTask) -> None:
        if self._timer is None:
            logger.warning("retry.queued_without_timer", key=task.key)
            return
        self._timer.call_later(
            self.settings.retry_backoff_s,
            functools.partial(self._run_retry, task.key),
            name=task.key,
        )
        logger.info(
            "retry.scheduled",
            key=task.key,
            attempt=task.attempts + 1,
            delay_s=self.settings.retry_backoff_s,
        )

    async def _run_retry(self, key: str) -> None:
        task = self._retries.get(key)
        if task is None:
            return
        task.attempts += 1
        try:
            async with self._lock_for(task.phone):
                response = await self._process(
                    task.phone, task.text, task.display_name, record=False
                )
        except Exception as e:
            logger.warning(
                "retry.attempt_failed", key=key, attempt=task.attempts, error=str(e)
            )
            if task.attempts >= task.max_attempts:
                del self._retries[key]
                logger.error("retry.exhausted", key=key, attempts=task.attempts)
                await self._deliver(self.on_retry_failed, task.phone, prompts.RETRY_FAILED)
            else:
                self._schedule_retry(task)
            return

        del self._retries[key]
        logger.info("retry.succeeded", key=key, attempt=task.attempts)
        await self._deliver(self.on_retry_success, task.phone, response)

    async def _deliver(self, callback: RetryCallback | None, phone: str, text: str) -> None:
        if callback is None:
            logger.warning("retry.no_callback", phone=phone)
            return
        try:
            await callback(phone, text)
        except Exception:
            logger.exception("retry.callback_failed", phone=phone)

    # --- clients and conversations ---

    def find_or_create_client(self, phone: str, display_name: str | None = None) -> Client:
        client = self._clients.get(phone)
        if client is None:
            client = Client(phone=phone, created_at=self._clock())
            self._clients[phone] = client
            logger.info("client.created", phone=phone, display_name=display_name)
        return client

    def find_or_create_active_conversation(self, client: Client) -> Conversation:
        conversation_id = self._active.get(client.phone)
        if conversation_id is not None:
            conversation = self._conversations[conversation_id]
            if not conversation.state.is_terminal:
                return conversation
        now = self._clock()
        conversation = Conversation(
            id=uuid.uuid4().hex,
            client_phone=client.phone,
            started_at=now,
            last_activity_at=now,
        )
        self._conversations[conversation.id] = conversation
        self._messages[conversation.id] = []
        self._active[client.phone] = conversation.id
        logger.info("conversation.created", phone=client.phone, conversation_id=conversation.id)
        return conversation

    def get_client(self, phone: str) -> Client | None:
        return self._clients.get(phone)

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def active_conversation(self, phone: str) -> Conversation | None:
        """Return the phone's open conversation, if any.

        Args:
            phone: Client phone number.

        Returns:
            The conversation new messages from ``phone`` would land in, or
            None when the last one reached a terminal state.
        """
        conversation_id = self._active.get(phone)
        return self._conversations.get(conversation_id) if conversation_id else None

    def list_conversations(self) -> list[Conversation]:
        """All conversations, most recently active first."""
        return sorted(
            self._conversations.values(),
            key=lambda c: c.last_activity_at,
            reverse=True,
        )

    def conversation_messages(self, conversation_id: str) -> list[Message]:
        """Return a copy of the conversation's message log.

        Args:
            conversation_id: Conversation to read.

        Returns:
            IN, OUT and ANALYSIS messages in the order they were logged.
            Empty for an unknown id.
        """
        return list(self._messages.get(conversation_id, ()))

    def triage_records(self) -> list[dict[str, Any]]:
        """Triage records, one per settled conversation that has an analysis.

        Returns:
            JSON-compatible dicts with ``conversation_id``, ``phone``,
            ``name``, ``email``, ``analysis`` and ``created_at`` keys.
        """
        return list(self._triages)

    def _log(
        self, conversation: Conversation, direction: MessageDirection, body: str
    ) -> Message:
        message = Message(
            id=next(self._message_ids),
            conversation_id=conversation.id,
            direction=direction,
            body=body,
            timestamp=self._clock(),
        )
        self._messages.setdefault(conversation.id, []).append(message)
        return message

    # --- processing ---

    async def process_incoming_message(
        self, phone: str, text: str, display_name: str | None = None
    ) -> str:
        """Advance the client's conversation and return the reply text.

        Turns for the same phone run one at a time, in arrival order; turns
        for different phones run concurrently.

        Args:
            phone: Client phone number, digits only.
            text: Normalized message text, possibly carrying a media tag.
            display_name: WhatsApp push name, only used for logging.

        Returns:
            The reply to send back. Never raises for processing failures:
            the turn is queued for retry and a randomized busy apology is
            returned instead.
        """
        try:
            async with self._lock_for(phone):
                return await self._process(phone, text, display_name)
        except Exception as e:
            logger.exception("conversation.processing_failed", phone=phone, error=str(e))
            self._enqueue_retry(phone, text, display_name)
            return self._rng.choice(prompts.BUSY_APOLOGIES)

    def _lock_for(self, phone: str) -> anyio.Lock:
        lock = self._locks.get(phone)
        if lock is None:
            lock = self._locks[phone] = anyio.Lock()
        return lock

    async def _process(
        self,
        phone: str,
        text: str,
        display_name: str | None,
        *,
        record: bool = True,
    ) -> str:
        client = self.find_or_create_client(phone, display_name)
        conversation = self.find_or_create_active_conversation(client)
        if record:
            self._log(conversation, MessageDirection.IN, text)

        state = conversation.state
        turn = TurnInput(
            text=text,
            client_name=client.name,
            client_email=client.email,
            turns=len(conversation.history),
            max_turns=self.settings.max_case_turns,
            details_min_length=self.settings.details_min_length,
        )

        if state is ConversationState.GENERATING_PREANALYSIS:
            turn = replace(turn, preanalysis=await self._preanalysis(conversation, client))
        elif needs_verdict(state, turn):
            turn = replace(turn, verdict=await self._decide(conversation, client, text))

        result = transition(state, turn)
        if result.state is ConversationState.GENERATING_PREANALYSIS and result.reply is None:
            turn = replace(turn, preanalysis=await self._preanalysis(conversation, client))
            follow = transition(ConversationState.GENERATING_PREANALYSIS, turn)
            result = Transition(follow.state, follow.reply, result.effects + follow.effects)

        reply_text = await self._render(result.reply, client, result.effects, text)

        self._apply(conversation, client, result.effects)
        if result.state is not state:
            logger.info(
                "conversation.transition",
                phone=phone,
                conversation_id=conversation.id,
                from_state=state.value,
                to_state=result.state.value,
            )
        conversation.state = result.state
        if result.state in _TRIAGE_STATES and conversation.id not in self._triaged:
            self._record_analysis(conversation, client)
        conversation.last_activity_at = self._clock()
        self._log(conversation, MessageDirection.OUT, reply_text)
        if result.state.is_terminal:
            self._active.pop(phone, None)
        return reply_text

    async def _decide(
        self, conversation: Conversation, client: Client, text: str
    ) -> CaseVerdict:
        if conversation.state is ConversationState.COLLECTING_DOCUMENTS:
            inbound = [
                m.body
                for m in self._messages.get(conversation.id, ())
                if m.direction is MessageDirection.IN
            ]
            analysis = await self._triage.analyze("\n".join(inbound), client.phone, self._llm)
            return CaseVerdict(finalize=True, message=prompts.CLOSING, analysis=analysis)

        history = [*conversation.history, text]
        combined = "\n".join(history)
        analysis = await self._triage.analyze(combined, client.phone, self._llm)
        try:
            output = await self._llm.generate(
                prompts.decision_prompt(history, analysis, client.name),
                assistant=self.assistant_name,
            )
        except LLMUnavailableError:
            if prompts.has_specific_details(combined):
                return CaseVerdict(finalize=True, message=prompts.CLOSING, analysis=analysis)
            return CaseVerdict(
                finalize=False, message=prompts.template("followup"), analysis=analysis
            )

        if output.upper().startswith(prompts.FINALIZE_MARKER):
            message = output[len(prompts.FINALIZE_MARKER) :].strip() or prompts.CLOSING
            return CaseVerdict(finalize=True, message=message, analysis=analysis)
        return CaseVerdict(finalize=False, message=output, analysis=analysis)

    async def _preanalysis(self, conversation: Conversation, client: Client) -> str:
        prompt = prompts.preanalysis_prompt(
            conversation.history, conversation.analysis, client.name
        )
        try:
            return await self._llm.generate_analysis(prompt)
        except LLMUnavailableError:
            return prompts.format_preanalysis(conversation.analysis, client.name)

    async def _render(
        self,
        reply: Reply | None,
        client: Client,
        effects: tuple[Effect, ...],
        text: str,
    ) -> str:
        if reply is None:
            raise ValueError("transition produced no reply")
        if reply.kind in _STATIC_REPLIES:
            return _STATIC_REPLIES[reply.kind]
        if reply.kind is ReplyKind.OFFER_PREANALYSIS:
            return prompts.offer_preanalysis(reply.text or prompts.CLOSING)
        if reply.text is not None:
            return reply.text

        name = client.name
        for effect in effects:
            if isinstance(effect, StoreName):
                name = effect.name
        key = reply.kind.value
        try:
            return await self._llm.generate(
                prompts.reply_prompt(key, name=name, text=text),
                assistant=self.assistant_name,
            )
        except LLMError as e:
            logger.debug("conversation.template_reply", kind=key, error=str(e))
            return prompts.template(key, assistant=self.assistant_name, name=name)

    def _apply(
        self, conversation: Conversation, client: Client, effects: tuple[Effect, ...]
    ) -> None:
        for effect in effects:
            if isinstance(effect, StoreName):
                client.name = effect.name
            elif isinstance(effect, StoreEmail):
                client.email = effect.email
            elif isinstance(effect, AppendTurn):
                conversation.history.append(effect.text)
            elif isinstance(effect, StoreAnalysis):
                conversation.analysis = effect.analysis
            elif isinstance(effect, StoreCompletion):
                conversation.completion_message = effect.message
            elif isinstance(effect, StorePreanalysis):
                conversation.preanalysis = effect.text
            elif isinstance(effect, MarkNeedsMoreInfo):
                conversation.needs_more_info = True

    def _record_analysis(self, conversation: Conversation, client: Client) -> None:
        # One record per conversation, taken when the case is settled.
        if conversation.analysis is None:
            return
        self._triaged.add(conversation.id)
        payload = conversation.analysis.to_dict()
        self._log(conversation, MessageDirection.ANALYSIS, json.dumps(payload, ensure_ascii=False))
        self._triages.append(
            {
                "conversation_id": conversation.id,
                "phone": client.phone,
                "name": client.name,
                "email": client.email,
                "analysis": payload,
                "created_at": self._clock().isoformat(),
            }
        )

    # --- persistence ---

    def snapshot(self) -> dict[str, Any]:
        """JSON-compatible dump of everything the engine owns."""
        return {
            "clients": [_client_to_dict(c) for c in self._clients.values()],
            "conversations": [_conversation_to_dict(c) for c in self._conversations.values()],
            "messages": {
                cid: [_message_to_dict(m) for m in messages]
                for cid, messages in self._messages.items()
            },
            "triages": list(self._triages),
        }

    def restore(self, data: dict[str, Any]) -> None:
        self._clients = {
            c["phone"]: _client_from_dict(c) for c in data.get("clients", [])
        }
        self._conversations = {
            c["id"]: _conversation_from_dict(c) for c in data.get("conversations", [])
        }
        self._messages = {
            cid: [_message_from_dict(m) for m in messages]
            for cid, messages in data.get("messages", {}).items()
        }
        self._triages = list(data.get("triages", []))
        self._triaged = {r["conversation_id"] for r in self._triages}
        self._active = {
            c.client_phone: c.id
            for c in sorted(self._conversations.values(), key=lambda c: c.started_at)
            if not c.state.is_terminal
        }
        last_id = max(
            (m.id for messages in self._messages.values() for m in messages), default=0
        )
        self._message_ids = itertools.count(last_id + 1)


def _client_to_dict(client: Client) -> dict[str, Any]:
    return {
        "phone": client.phone,
        "name": client.name,
        "email": client.email,
        "created_at": client.created_at.isoformat(),
    }


def _client_from_dict(data: dict[str, Any]) -> Client:
    return Client(
        phone=data["phone"],
        name=data.get("name"),
        email=data.get("email"),
        created_at=datetime.fromisoformat(data["created_at"]),
    )


def _conversation_to_dict(conversation: Conversation) -> dict[str, Any]:
    return {
        "id": conversation.id,
        "client_phone": conversation.client_phone,
        "state": conversation.state.value,
        "started_at": conversation.started_at.isoformat(),
        "last_activity_at": conversation.last_activity_at.isoformat(),
        "history": list(conversation.history),
        "analysis": conversation.analysis.to_dict() if conversation.analysis else None,
        "completion_message": conversation.completion_message,
        "preanalysis": conversation.preanalysis,
        "needs_more_info": conversation.needs_more_info,
    }


def _conversation_from_dict(data: dict[str, Any]) -> Conversation:
    analysis = data.get("analysis")
    return Conversation(
        id=data["id"],
        client_phone=data["client_phone"],
        state=ConversationState(data["state"]),
        started_at=datetime.fromisoformat(data["started_at"]),
        last_activity_at=datetime.fromisoformat(data["last_activity_at"]),
        history=list(data.get("history", [])),
        analysis=TriageAnalysis.from_dict(analysis) if analysis else None,
        completion_message=data.get("completion_message"),
        preanalysis=data.get("preanalysis"),
        needs_more_info=bool(data.get("needs_more_info", False)),
    )


def _message_to_dict(message: Message) -> dict[str, Any]:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "direction": message.direction.value,
        "body": message.body,
        "timestamp": message.timestamp.isoformat(),
    }


def _message_from_dict(data: dict[str, Any]) -> Message:
    return Message(
        id=int(data["id"]),
        conversation_id=data["conversation_id"],
        direction=MessageDirection(data["direction"]),
        body=data["body"],
        timestamp=datetime.fromisoformat(data["timestamp"]),
    )
