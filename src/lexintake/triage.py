"""Legal triage: ask the LLM for a JSON case assessment and repair it.

Model output is frequently truncated or wrapped in prose, so parsing is
layered: direct parse, cleanup and brace balancing, then a conservative
fallback analysis that always escalates to a human.
"""

from __future__ import annotations

import json
import re
from typing import Any, Protocol

from .llm import LLMError, LLMProvider
from .logging import get_logger
from .model import TriageAnalysis

logger = get_logger(__name__)

CATEGORIES = (
    "Trabalhista",
    "Civil",
    "Penal",
    "Empresarial",
    "Tributário",
    "Administrativo",
    "Constitucional",
    "Família",
    "Consumidor",
    "Imobiliário",
    "Previdenciário",
    "Internacional",
    "Outros",
)
URGENCIES = ("alta", "media", "baixa")
FLAGS = ("medida_cautelar", "ameaça", "crime", "prazo_urgente", "risco_financeiro")

_FALLBACK_DESCRIPTION_LIMIT = 500
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_FENCE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)

TRIAGE_PROMPT = """Analise o relato abaixo de um potencial cliente e responda SOMENTE com JSON válido:
{{
  "client": {{"phone": "{phone}"}},
  "case": {{"category": "<{categories}>", "description": "<resumo objetivo>",
            "date": "<data dos fatos ou null>", "urgency": "<alta|media|baixa>",
            "documents": ["<documentos citados>"]}},
  "triage": {{"confidence": <0..1>, "escalate": <true|false>,
              "flags": [<{flags}>], "recommended_action": "<próximo passo>"}}
}}

Relato:
{text}
"""


class TriageCollaborator(Protocol):
    async def analyze(self, text: str, phone: str, llm: LLMProvider) -> TriageAnalysis: ...


def extract_json_block(text: str) -> str | None:
    """Return the outermost ``{...}`` region of ``text`` (fences stripped)."""
    fenced = _FENCE.search(text)
    if fenced:
        text = fenced.group(1)
    start = text.find("{")
    if start == -1:
        return None
    end = text.rfind("}")
    return text[start : end + 1] if end > start else text[start:]


def repair_json(text: str) -> str:
    """Best-effort fix for truncated model JSON.

    Drops control characters and trailing commas, closes an unterminated
    string, then appends whatever brackets are still open.
    """
    text = _CONTROL_CHARS.sub("", text).strip()
    text = _TRAILING_COMMA.sub(r"\1", text)

    stack: list[str] = []
    in_string = False
    escaped = False
    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append("}" if char == "{" else "]")
        elif char in "}]" and stack and stack[-1] == char:
            stack.pop()

    if in_string:
        text += '"'
    text = text.rstrip().rstrip(",")
    return text + "".join(reversed(stack))


def parse_triage_payload(text: str) -> dict[str, Any] | None:
    block = extract_json_block(text)
    if block is None:
        return None
    for candidate in (block, repair_json(block)):
        try:
            data = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(data, dict):
            return data
    return None


def _normalize_category(value: Any) -> str:
    text = str(value or "").strip().lower()
    for category in CATEGORIES:
        if category.lower() == text:
            return category
    return "Outros"


def _normalize_urgency(value: Any) -> str:
    text = str(value or "").strip().lower().replace("é", "e")
    return text if text in URGENCIES else "media"


def analysis_from_payload(data: dict[str, Any], text: str) -> TriageAnalysis:
    case = data.get("case") or {}
    triage = data.get("triage") or {}
    try:
        confidence = float(triage.get("confidence", 0.5))
    except (TypeError, ValueError):
        confidence = 0.5
    flags = tuple(str(flag) for flag in triage.get("flags") or () if str(flag) in FLAGS)
    return TriageAnalysis(
        category=_normalize_category(case.get("category")),
        urgency=_normalize_urgency(case.get("urgency")),
        description=str(case.get("description") or text[:_FALLBACK_DESCRIPTION_LIMIT]),
        documents=tuple(str(doc) for doc in case.get("documents") or ()),
        confidence=min(max(confidence, 0.0), 1.0),
        escalate=bool(triage.get("escalate", True)),
        recommended_action=str(triage.get("recommended_action") or ""),
        flags=flags,
        raw=data,
    )


def fallback_analysis(text: str, phone: str) -> TriageAnalysis:
    description = text
    if len(description) > _FALLBACK_DESCRIPTION_LIMIT:
        description = description[:_FALLBACK_DESCRIPTION_LIMIT] + "..."
    return TriageAnalysis(
        category="Outros",
        urgency="media",
        description=description,
        confidence=0.5,
        escalate=True,
        recommended_action="Análise manual por advogado",
        raw={"client": {"phone": phone}, "fallback": True},
    )


class TriageService:
    """Triage collaborator backed by ``LLMProvider.generate_analysis``."""

    async def analyze(self, text: str, phone: str, llm: LLMProvider) -> TriageAnalysis:
        prompt = TRIAGE_PROMPT.format(
            phone=phone,
            categories="|".join(CATEGORIES),
            flags=", ".join(f'"{flag}"' for flag in FLAGS),
            text=text,
        )
        try:
            output = await llm.generate_analysis(prompt)
        except LLMError as e:
            logger.warning("triage.llm_failed", phone=phone, error=str(e))
            return fallback_analysis(text, phone)

        data = parse_triage_payload(output)
        if data is None:
            logger.warning("triage.unparseable", phone=phone, length=len(output))
            return fallback_analysis(text, phone)
        return analysis_from_payload(data, text)
