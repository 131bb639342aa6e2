"""
Message intent classification for ai_analyze_and_move.

The model is given a numbered list of intents and must answer with the
number of the matching one, or 0 for none.
"""
from __future__ import annotations

import logging
import re
from typing import Optional

from anthropic import AsyncAnthropic

from app.config import settings

logger = logging.getLogger(__name__)

INTENT_PROMPT = {
    "system": """Você é um analisador de intenções de mensagens de WhatsApp para um sistema de vendas/CRM.

Analise a mensagem do cliente e identifique qual das seguintes intenções melhor descreve o que o cliente quer:
{intents}

Responda APENAS com o número da intenção identificada (1, 2, 3, etc.) ou "0" se nenhuma intenção se aplicar.
Não adicione explicações, apenas o número.""",
    "user": """Mensagem do cliente: "{text}\"""",
}


class IntentClassifierUnavailable(RuntimeError):
    """No API key configured."""


def parse_intent_index(raw: Optional[str], intent_count: int) -> int:
    """First integer in the reply, clamped to 0 when out of range."""
    if not raw:
        return 0
    match = re.search(r"\d+", raw)
    if not match:
        return 0
    index = int(match.group(0))
    if index < 1 or index > intent_count:
        return 0
    return index


async def classify_intent(
    text: str,
    intents: list[str],
    *,
    model: Optional[str] = None,
    api_key: Optional[str] = None,
    timeout: float = 15.0,
) -> int:
    """
    Returns the 1-based index of the matching intent, 0 when none applies.

    Raises IntentClassifierUnavailable when no API key is configured; API
    errors propagate to the caller.
    """
    api_key = api_key or settings.anthropic_api_key
    if not api_key:
        raise IntentClassifierUnavailable("AI not configured")

    numbered = "\n".join(f"{i + 1}. {intent}" for i, intent in enumerate(intents))
    client = AsyncAnthropic(api_key=api_key, timeout=timeout)
    msg = await client.messages.create(
        model=model or settings.intent_model,
        max_tokens=8,
        temperature=0,
        system=INTENT_PROMPT["system"].format(intents=numbered),
        messages=[{"role": "user", "content": INTENT_PROMPT["user"].format(text=text)}],
    )
    reply = msg.content[0].text if msg.content else ""
    index = parse_intent_index(reply, len(intents))
    logger.info("Intent classification: reply=%r index=%d of %d", reply[:20], index, len(intents))
    return index
