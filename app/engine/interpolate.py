"""
Template variables for automation text ({{nome}}, {{valor}}, ...).
"""
from __future__ import annotations

import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from app.engine.models import Deal

PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")

DEFAULT_CONTACT_NAME = "Cliente"


def format_value(value: Any) -> str:
    """Deal value as plain text: 150 -> "150", 99.5 -> "99.5", missing -> "0"."""
    if value is None:
        return "0"
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    if value == value.to_integral_value():
        return str(int(value))
    return format(value.normalize(), "f")


def build_variables(deal: Deal, now: Optional[datetime] = None) -> dict[str, str]:
    now = now or datetime.now()
    contact = deal.contact
    return {
        "nome": (contact.name if contact else None) or DEFAULT_CONTACT_NAME,
        "telefone": (contact.phone if contact else None) or "",
        "email": (contact.email if contact else None) or "",
        "valor": format_value(deal.value),
        "funil": deal.funnel_name or "",
        "etapa": deal.stage.name if deal.stage else "",
        "titulo": deal.title or "",
        "data": now.strftime("%d/%m/%Y"),
        "deal_id": deal.id or "",
    }


def render_template(text: Optional[str], variables: dict[str, str]) -> str:
    """
    Replace known {{placeholders}} in one pass.

    Unknown placeholders are left as written; substituted values are not
    scanned again.
    """
    if not text:
        return ""

    def _sub(match: re.Match) -> str:
        name = match.group(1)
        if name in variables:
            return variables[name]
        return match.group(0)

    return PLACEHOLDER_RE.sub(_sub, text)
