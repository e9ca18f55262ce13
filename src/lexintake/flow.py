"""Pure intake state machine.

``transition(state, turn)`` decides the next state, what kind of reply to
send and which side effects to apply. It performs no I/O: anything that
needs a collaborator (triage, LLM decision, pre-analysis text) is
computed by the engine beforehand and passed in on ``TurnInput``.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TypeAlias

from .model import ConversationState, TriageAnalysis
from .prompts import CLOSING

State = ConversationState

_QUESTION_PHRASES = (
    "precisa",
    "por que",
    "porque",
    "pra que",
    "para que",
    "tem que",
    "obrigatório",
    "obrigatorio",
)
_GREETINGS = ("olá", "ola", "oi", "bom dia", "boa tarde", "boa noite", "tudo bem")
_STOP_WORDS = frozenset({"sim", "não", "nao", "ok", "certo", "claro", "pode", "sei"})
_FILLER_WORDS = frozenset({"meu", "nome", "é", "sou", "eu", "me", "chamo", "aqui"})
_PARTICLES = frozenset({"da", "de", "do", "das", "dos", "e"})
_LETTERS_ONLY = re.compile(r"^[^\W\d_]+$")
_MAX_NAME_WORDS = 5

_EMAIL = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")

_NEGATIVE = ("não", "nao", "dispenso", "n")
_POSITIVE = (
    "sim",
    "s",
    "quero",
    "pode",
    "pode ser",
    "claro",
    "gostaria",
    "ok",
    "aceito",
    "por favor",
    "manda",
    "com certeza",
    "yes",
)


def _contains_phrase(text: str, phrases: tuple[str, ...]) -> bool:
    return any(
        re.search(rf"(?<!\w){re.escape(phrase)}(?!\w)", text) for phrase in phrases
    )


def extract_name(text: str) -> str | None:
    """Pull a person's name out of a free-text reply, or None."""
    stripped = text.strip()
    if not stripped:
        return None
    lowered = stripped.lower()
    if "?" in lowered or _contains_phrase(lowered, _QUESTION_PHRASES):
        return None
    if _contains_phrase(lowered, _GREETINGS):
        return None

    words = [word.strip(".,!;:") for word in stripped.split()]
    words = [word for word in words if word]
    if len(words) == 1 and (len(words[0]) < 3 or words[0].lower() in _STOP_WORDS):
        return None

    candidate = [word for word in words if word.lower() not in _FILLER_WORDS]
    if not candidate or len(candidate) > _MAX_NAME_WORDS:
        return None
    if len(candidate) == 1 and len(candidate[0]) < 3:
        return None
    if not all(_LETTERS_ONLY.match(word) for word in candidate):
        return None
    if not candidate[0][0].isupper():
        return None
    for word in candidate[1:]:
        if not word[0].isupper() and word not in _PARTICLES:
            return None
    return " ".join(candidate)


def extract_email(text: str) -> str | None:
    match = _EMAIL.search(text)
    return match.group(0) if match else None


class Decision(str, Enum):
    YES = "yes"
    NO = "no"
    UNCLEAR = "unclear"


def classify_decision(text: str) -> Decision:
    lowered = text.strip().lower()
    if _contains_phrase(lowered, _NEGATIVE):
        return Decision.NO
    if _contains_phrase(lowered, _POSITIVE):
        return Decision.YES
    return Decision.UNCLEAR


class ReplyKind(str, Enum):
    ASK_NAME = "ask_name"
    REASK_NAME = "reask_name"
    ASK_EMAIL = "ask_email"
    REASK_EMAIL = "reask_email"
    ASK_CASE = "ask_case"
    ASK_DETAILS = "ask_details"
    CASE_FOLLOWUP = "followup"
    OFFER_PREANALYSIS = "offer_preanalysis"
    REASK_PREANALYSIS = "reask_preanalysis"
    PREANALYSIS = "preanalysis"
    CLOSING = "closing"
    DECLINED = "declined"
    FORCED_CLOSING = "forced_closing"
    REASSURANCE = "reassurance"


@dataclass(frozen=True, slots=True)
class Reply:
    kind: ReplyKind
    text: str | None = None


@dataclass(frozen=True, slots=True)
class StoreName:
    name: str


@dataclass(frozen=True, slots=True)
class StoreEmail:
    email: str


@dataclass(frozen=True, slots=True)
class AppendTurn:
    text: str


@dataclass(frozen=True, slots=True)
class StoreAnalysis:
    analysis: TriageAnalysis


@dataclass(frozen=True, slots=True)
class StoreCompletion:
    message: str


@dataclass(frozen=True, slots=True)
class StorePreanalysis:
    text: str


@dataclass(frozen=True, slots=True)
class MarkNeedsMoreInfo:
    pass


Effect: TypeAlias = (
    StoreName
    | StoreEmail
    | AppendTurn
    | StoreAnalysis
    | StoreCompletion
    | StorePreanalysis
    | MarkNeedsMoreInfo
)


@dataclass(frozen=True, slots=True)
class CaseVerdict:
    """Outcome of the triage + LLM decision step for one case turn."""

    finalize: bool
    message: str
    analysis: TriageAnalysis | None = None


@dataclass(frozen=True, slots=True)
class TurnInput:
    text: str
    client_name: str | None = None
    client_email: str | None = None
    turns: int = 0
    max_turns: int = 6
    details_min_length: int = 50
    verdict: CaseVerdict | None = None
    preanalysis: str | None = None


@dataclass(frozen=True, slots=True)
class Transition:
    state: ConversationState
    reply: Reply | None
    effects: tuple[Effect, ...] = ()


def forces_completion(turn: TurnInput) -> bool:
    """True when this case turn reaches the accumulated-turn cap."""
    return turn.turns + 1 >= turn.max_turns


def needs_verdict(state: ConversationState, turn: TurnInput) -> bool:
    """Whether the engine must run triage and the decision step first."""
    if state is State.ANALYZING_CASE:
        return not forces_completion(turn)
    if state is State.COLLECTING_DETAILS:
        return len(turn.text) > turn.details_min_length and not forces_completion(turn)
    return state is State.COLLECTING_DOCUMENTS


def _greeting(turn: TurnInput) -> Transition:
    if turn.client_name and turn.client_email:
        return Transition(State.ANALYZING_CASE, Reply(ReplyKind.ASK_CASE))
    if turn.client_name:
        return Transition(State.COLLECTING_EMAIL, Reply(ReplyKind.ASK_EMAIL))
    return Transition(State.COLLECTING_NAME, Reply(ReplyKind.ASK_NAME))


def _collecting_name(turn: TurnInput) -> Transition:
    name = extract_name(turn.text)
    if name is None:
        return Transition(State.COLLECTING_NAME, Reply(ReplyKind.REASK_NAME))
    return Transition(
        State.COLLECTING_EMAIL, Reply(ReplyKind.ASK_EMAIL), (StoreName(name),)
    )


def _collecting_email(turn: TurnInput) -> Transition:
    email = extract_email(turn.text)
    if email is None:
        return Transition(State.COLLECTING_EMAIL, Reply(ReplyKind.REASK_EMAIL))
    return Transition(
        State.ANALYZING_CASE, Reply(ReplyKind.ASK_CASE), (StoreEmail(email),)
    )


def _analyzing_case(turn: TurnInput) -> Transition:
    effects: list[Effect] = [AppendTurn(turn.text)]
    if forces_completion(turn):
        effects.append(StoreCompletion(CLOSING))
        return Transition(State.COMPLETED, Reply(ReplyKind.FORCED_CLOSING), tuple(effects))

    verdict = turn.verdict
    if verdict is None:
        raise ValueError("case turn requires a verdict")
    if verdict.analysis is not None:
        effects.append(StoreAnalysis(verdict.analysis))
    if verdict.finalize:
        effects.append(StoreCompletion(verdict.message))
        return Transition(
            State.AWAITING_PREANALYSIS_DECISION,
            Reply(ReplyKind.OFFER_PREANALYSIS, verdict.message),
            tuple(effects),
        )
    effects.append(MarkNeedsMoreInfo())
    return Transition(
        State.ANALYZING_CASE,
        Reply(ReplyKind.CASE_FOLLOWUP, verdict.message),
        tuple(effects),
    )


def _collecting_details(turn: TurnInput) -> Transition:
    if len(turn.text) > turn.details_min_length or forces_completion(turn):
        return _analyzing_case(turn)
    return Transition(State.COLLECTING_DETAILS, Reply(ReplyKind.ASK_DETAILS))


def _collecting_documents(turn: TurnInput) -> Transition:
    verdict = turn.verdict
    if verdict is None:
        raise ValueError("document turn requires a verdict")
    effects: list[Effect] = [StoreCompletion(CLOSING)]
    if verdict.analysis is not None:
        effects.insert(0, StoreAnalysis(verdict.analysis))
    return Transition(State.COMPLETED, Reply(ReplyKind.CLOSING), tuple(effects))


def _awaiting_preanalysis_decision(turn: TurnInput) -> Transition:
    decision = classify_decision(turn.text)
    if decision is Decision.YES:
        return Transition(State.GENERATING_PREANALYSIS, None)
    if decision is Decision.NO:
        return Transition(State.COMPLETED, Reply(ReplyKind.DECLINED))
    return Transition(
        State.AWAITING_PREANALYSIS_DECISION, Reply(ReplyKind.REASK_PREANALYSIS)
    )


def _generating_preanalysis(turn: TurnInput) -> Transition:
    if turn.preanalysis is None:
        raise ValueError("pre-analysis text required")
    return Transition(
        State.COMPLETED,
        Reply(ReplyKind.PREANALYSIS, turn.preanalysis),
        (StorePreanalysis(turn.preanalysis),),
    )


def _settled(state: ConversationState) -> Callable[[TurnInput], Transition]:
    def handler(turn: TurnInput) -> Transition:
        _ = turn
        return Transition(state, Reply(ReplyKind.REASSURANCE))

    return handler


_HANDLERS: dict[ConversationState, Callable[[TurnInput], Transition]] = {
    State.GREETING: _greeting,
    State.COLLECTING_NAME: _collecting_name,
    State.COLLECTING_EMAIL: _collecting_email,
    State.ANALYZING_CASE: _analyzing_case,
    State.COLLECTING_DETAILS: _collecting_details,
    State.COLLECTING_DOCUMENTS: _collecting_documents,
    State.AWAITING_PREANALYSIS_DECISION: _awaiting_preanalysis_decision,
    State.GENERATING_PREANALYSIS: _generating_preanalysis,
    State.AWAITING_LAWYER: _settled(State.AWAITING_LAWYER),
    State.COMPLETED: _settled(State.COMPLETED),
}


def transition(state: ConversationState, turn: TurnInput) -> Transition:
    """Next state, reply and effects for one user turn.

    Raises:
        ValueError: If a collaborator-dependent state is missing its input
    """
    return _HANDLERS[state](turn)
