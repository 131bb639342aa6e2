"""
Trigger resolution: which trigger kinds does an event activate?
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from app.engine.stages import (
    ON_FUNNEL_ENTER,
    ON_STAGE_ENTER,
    ON_STAGE_EXIT,
    Stage,
    entry_trigger_kinds,
)


@dataclass
class AutomationEvent:
    """One inbound event for a deal."""
    deal_id: str
    from_stage_id: Optional[str] = None
    to_stage_id: Optional[str] = None
    trigger_type: Optional[str] = None
    message_text: Optional[str] = None
    tag_name: Optional[str] = None
    field_key: Optional[str] = None
    field_value: Optional[str] = None
    is_new_deal: bool = False
    # Extra template variables supplied by an inbound webhook call
    custom_data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "deal_id": self.deal_id,
            "from_stage_id": self.from_stage_id,
            "to_stage_id": self.to_stage_id,
            "trigger_type": self.trigger_type,
            "tag_name": self.tag_name,
            "field_key": self.field_key,
            "is_new_deal": self.is_new_deal,
        }


def resolve_trigger_kinds(event: AutomationEvent, to_stage: Optional[Stage] = None) -> list[str]:
    """
    Candidate trigger kinds for `event`.

    - is_new_deal     → on_funnel_enter
    - to_stage_id     → on_stage_enter (+ on_deal_won / on_deal_lost when the stage is final)
    - from_stage_id   → on_stage_exit
    - trigger_type    → included verbatim

    The result is consumed as a set; duplicates are harmless.
    """
    kinds: list[str] = []

    if event.is_new_deal:
        kinds.append(ON_FUNNEL_ENTER)

    if event.to_stage_id:
        if to_stage is not None:
            kinds.extend(entry_trigger_kinds(to_stage))
        else:
            kinds.append(ON_STAGE_ENTER)

    if event.from_stage_id:
        kinds.append(ON_STAGE_EXIT)

    if event.trigger_type:
        kinds.append(event.trigger_type)

    return kinds
