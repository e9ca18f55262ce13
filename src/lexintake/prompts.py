"""Fixed replies and LLM prompt builders for the intake dialogue.

Every user-facing string that must survive an LLM outage lives here.
"""

from __future__ import annotations

import re
from collections.abc import Iterable

from .model import TriageAnalysis

BUSY_APOLOGIES = (
    "Oi! Estou com muitas mensagens agora, mas já volto para te atender. "
    "Aguarde só um minutinho! 😊",
    "Olá! Estou meio ocupada no momento, mas já já retorno para continuar nossa conversa!",
    "Oi! Só um momentinho, estou finalizando outro atendimento e já volto para você!",
    "Olá! Estou um pouco sobrecarregada agora, mas em instantes volto para te ajudar!",
)

RETRY_FAILED = "Desculpe, não consegui processar sua mensagem. Tente novamente mais tarde."

TECHNICAL_DIFFICULTIES = (
    "Desculpe, estou com dificuldades técnicas. Tente novamente mais tarde."
)

CLOSING = (
    "Entendi. Com base em todas as informações que você forneceu, nossa equipe "
    "jurídica irá analisar seu caso detalhadamente. Um advogado especializado "
    "entrará em contato em até 24 horas para discutir os próximos passos e "
    "esclarecer suas dúvidas."
)

DECLINED = (
    "Tudo bem! Seu caso já está registrado e um advogado especializado entrará "
    "em contato em até 24 horas. Obrigada pela confiança!"
)

REASSURANCE = (
    "Seu caso já foi registrado e está com a nossa equipe jurídica. Um advogado "
    "entrará em contato em breve. Se quiser acrescentar alguma informação, "
    "pode escrever por aqui."
)

PREANALYSIS_QUESTION = (
    "Gostaria de receber agora uma pré-análise do seu caso? Responda *sim* ou *não*."
)

FINALIZE_MARKER = "FINALIZAR:"

# Used when the LLM is not configured or fails on a conversational turn.
TEMPLATES = {
    "ask_name": (
        "Olá! Eu sou a {assistant}, assistente virtual do escritório. "
        "Para começarmos, qual é o seu nome completo?"
    ),
    "reask_name": "Desculpe, não consegui identificar seu nome. Pode me dizer como se chama?",
    "ask_email": "Prazer, {name}! Qual é o seu e-mail para contato?",
    "reask_email": (
        "Não consegui identificar um e-mail válido. Pode enviar no formato "
        "nome@exemplo.com?"
    ),
    "ask_case": (
        "Obrigada, {name}! Agora me conte, com o máximo de detalhes possível, "
        "o que aconteceu no seu caso."
    ),
    "ask_details": (
        "Pode me contar mais detalhes? Datas, valores, pessoas envolvidas e "
        "documentos ajudam bastante na análise."
    ),
    "followup": (
        "Entendi. Pode me dar mais detalhes, como datas, valores envolvidos e "
        "quem são as partes?"
    ),
    "reask_preanalysis": (
        "Desculpe, não entendi. Você gostaria de receber a pré-análise do seu caso? "
        "Responda *sim* ou *não*."
    ),
}

URGENCY_TEXT = {
    "alta": "alta - requer atenção imediata",
    "media": "média - deve ser tratado em breve",
    "baixa": "baixa - pode seguir o fluxo normal",
}

CONTACT_TIMEFRAME = {
    "alta": "nas próximas 2 horas",
    "media": "em até 24 horas",
    "baixa": "em até 48 horas",
}

_DETAIL_PATTERNS = (
    re.compile(r"\b\d{1,2}/\d{1,2}(?:/\d{2,4})?\b"),
    re.compile(r"R\$\s*\d|\b\d+[.,]?\d*\s*(?:reais|mil)\b", re.IGNORECASE),
    re.compile(
        r"\b(?:janeiro|fevereiro|março|abril|maio|junho|julho|agosto|setembro|"
        r"outubro|novembro|dezembro|ontem|semana|mês|ano)\b",
        re.IGNORECASE,
    ),
    re.compile(
        r"\b(?:contrato|carteira|recibo|nota fiscal|boleto|documento|holerite|"
        r"empresa|patrão|chefe|advogado|juiz|processo)\b",
        re.IGNORECASE,
    ),
)

DETAILED_CASE_LENGTH = 300


def has_specific_details(text: str) -> bool:
    """Long text that mentions dates, amounts, documents or parties."""
    if len(text) <= DETAILED_CASE_LENGTH:
        return False
    hits = sum(1 for pattern in _DETAIL_PATTERNS if pattern.search(text))
    return hits >= 2


def template(key: str, *, assistant: str = "Ana", name: str | None = None) -> str:
    return TEMPLATES[key].format(assistant=assistant, name=name or "")


def offer_preanalysis(completion: str) -> str:
    return f"{completion}\n\n{PREANALYSIS_QUESTION}"


def _numbered(history: Iterable[str]) -> str:
    return "\n".join(f"{i}. {turn}" for i, turn in enumerate(history, start=1))


def reply_prompt(key: str, *, name: str | None, text: str) -> str:
    instructions = {
        "ask_name": "Cumprimente o cliente e peça o nome completo dele.",
        "reask_name": "Você não identificou um nome na mensagem. Peça o nome de novo, com gentileza.",
        "ask_email": f"O cliente se chama {name}. Agradeça e peça o e-mail dele.",
        "reask_email": "Você não identificou um e-mail válido. Peça o e-mail de novo.",
        "ask_case": f"O cliente {name} já informou nome e e-mail. Peça que descreva o caso jurídico.",
        "ask_details": "Peça mais detalhes do caso: datas, valores, partes e documentos.",
        "reask_preanalysis": "Pergunte de novo se o cliente quer a pré-análise (sim ou não).",
    }[key]
    return f"{instructions}\nÚltima mensagem do cliente: \"{text}\"\nResponda em até 3 frases."


def decision_prompt(
    history: list[str], analysis: TriageAnalysis | None, name: str | None
) -> str:
    triage = ""
    if analysis is not None:
        triage = (
            f"\nTriagem preliminar: área {analysis.category}, urgência "
            f"{analysis.urgency}, confiança {analysis.confidence:.2f}."
        )
    return (
        f"Cliente: {name or 'não informado'}.{triage}\n"
        f"Mensagens do cliente até agora:\n{_numbered(history)}\n\n"
        "Se já houver informação suficiente para encaminhar o caso a um advogado "
        f"(fatos, datas, partes, valores), responda começando com '{FINALIZE_MARKER}' "
        "seguido de uma mensagem de encerramento ao cliente. Caso contrário, faça "
        "UMA pergunta objetiva para obter o detalhe mais importante que falta."
    )


def preanalysis_prompt(
    history: list[str], analysis: TriageAnalysis | None, name: str | None
) -> str:
    triage = analysis.to_dict() if analysis is not None else {}
    triage.pop("raw", None)
    return (
        f"Elabore uma pré-análise jurídica para o cliente {name or ''}, em português, "
        "com: resumo dos fatos, área do direito, possíveis direitos envolvidos, "
        "documentos recomendados e próximos passos. Deixe claro que não substitui "
        "a consulta com o advogado.\n"
        f"Triagem: {triage}\n"
        f"Relato do cliente:\n{_numbered(history)}"
    )


def format_preanalysis(analysis: TriageAnalysis | None, name: str | None) -> str:
    """Pre-analysis rendered from triage alone, for when the LLM is down."""
    if analysis is None:
        return CLOSING
    lines = [
        f"*Pré-análise do seu caso{', ' + name if name else ''}*",
        "",
        f"Área do direito: {analysis.category}",
        f"Urgência: {URGENCY_TEXT.get(analysis.urgency, analysis.urgency)}",
    ]
    if analysis.description:
        lines.append(f"Resumo: {analysis.description}")
    if analysis.documents:
        lines.append("Documentos relevantes: " + ", ".join(analysis.documents))
    if analysis.recommended_action:
        lines.append(f"Próximo passo recomendado: {analysis.recommended_action}")
    timeframe = CONTACT_TIMEFRAME.get(analysis.urgency, "em até 24 horas")
    lines += [
        "",
        f"Um advogado especializado entrará em contato {timeframe}. "
        "Esta pré-análise não substitui a consulta jurídica.",
    ]
    return "\n".join(lines)


AUDIO_NOT_UNDERSTOOD = (
    "Desculpe, não consegui entender o áudio. Pode tentar enviar uma mensagem de texto?"
)
AUDIO_FAILED = (
    "Desculpe, tive problemas para processar o áudio. "
    "Pode tentar enviar uma mensagem de texto?"
)
PDF_ONLY = (
    "Desculpe, apenas documentos PDF são suportados. Pode enviar um PDF ou me "
    "contar sobre o documento por texto/áudio?"
)
DOCUMENT_FAILED = (
    "Desculpe, tive problemas para processar o documento. Pode tentar enviar "
    "novamente ou me contar sobre o conteúdo por texto/áudio?"
)
UNSUPPORTED_KIND = (
    "Desculpe, posso responder a mensagens de texto, áudio e aceitar documentos PDF. "
    "Como posso ajudá-lo hoje?"
)
PDF_TAG = "[DOCUMENTO PDF ANEXADO]"
IMAGE_TAG = "[IMAGEM ANEXADA]"
VIDEO_TAG = "[VIDEO ANEXADO]"
