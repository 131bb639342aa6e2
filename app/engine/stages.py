"""
Funnel stages, trigger kinds and the deal stage state machine.

Stages are rows, not constants: every funnel owns its own ordered list.
A stage may be terminal (is_final) with a polarity (final_type won/lost).

transition() is pure. It computes the next DealState and the trigger
kinds the move emits; writing the deal, the history row and dispatching
automations is done by app.engine.deals and app.engine.dispatcher.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional

from app.engine.errors import StageTransitionError

# Terminal polarities
FINAL_WON = "won"
FINAL_LOST = "lost"
FINAL_TYPES: frozenset[str] = frozenset([FINAL_WON, FINAL_LOST])

# Trigger kinds
ON_FUNNEL_ENTER = "on_funnel_enter"
ON_STAGE_ENTER = "on_stage_enter"
ON_STAGE_EXIT = "on_stage_exit"
ON_DEAL_WON = "on_deal_won"
ON_DEAL_LOST = "on_deal_lost"
ON_TIME_IN_STAGE = "on_time_in_stage"
ON_MESSAGE_RECEIVED = "on_message_received"
ON_KEYWORD_RECEIVED = "on_keyword_received"
ON_CONTACT_CREATED = "on_contact_created"
ON_TAG_ADDED = "on_tag_added"
ON_TAG_REMOVED = "on_tag_removed"
ON_INACTIVITY = "on_inactivity"
ON_DEAL_VALUE_CHANGED = "on_deal_value_changed"
ON_CUSTOM_FIELD_CHANGED = "on_custom_field_changed"
ON_WEBHOOK = "on_webhook"
ON_FORM_SUBMISSION = "on_form_submission"
ON_EXISTING_DEALS = "on_existing_deals"

TRIGGER_TYPES: frozenset[str] = frozenset([
    ON_FUNNEL_ENTER,
    ON_STAGE_ENTER,
    ON_STAGE_EXIT,
    ON_DEAL_WON,
    ON_DEAL_LOST,
    ON_TIME_IN_STAGE,
    ON_MESSAGE_RECEIVED,
    ON_KEYWORD_RECEIVED,
    ON_CONTACT_CREATED,
    ON_TAG_ADDED,
    ON_TAG_REMOVED,
    ON_INACTIVITY,
    ON_DEAL_VALUE_CHANGED,
    ON_CUSTOM_FIELD_CHANGED,
    ON_WEBHOOK,
    ON_FORM_SUBMISSION,
    ON_EXISTING_DEALS,
])

# Message triggers are scoped against the deal's current stage, not the move.
MESSAGE_TRIGGERS: frozenset[str] = frozenset([ON_MESSAGE_RECEIVED, ON_KEYWORD_RECEIVED])

FINAL_TRIGGER: dict[str, str] = {
    FINAL_WON: ON_DEAL_WON,
    FINAL_LOST: ON_DEAL_LOST,
}

DEFAULT_STAGE_COLOR = "#3B82F6"

# Template applied by create_funnel()
DEFAULT_STAGES: list[dict] = [
    {"name": "Novo Lead", "color": "#94A3B8", "display_order": 0, "probability": 10},
    {"name": "Contato Inicial", "color": "#3B82F6", "display_order": 1, "probability": 25},
    {"name": "Proposta Enviada", "color": "#8B5CF6", "display_order": 2, "probability": 50},
    {"name": "Negociação", "color": "#F59E0B", "display_order": 3, "probability": 75},
    {"name": "Ganho", "color": "#22C55E", "display_order": 4, "probability": 100,
     "is_final": True, "final_type": FINAL_WON},
    {"name": "Perdido", "color": "#EF4444", "display_order": 5, "probability": 0,
     "is_final": True, "final_type": FINAL_LOST},
]


@dataclass(frozen=True)
class Stage:
    id: str
    funnel_id: str
    name: str
    color: str = DEFAULT_STAGE_COLOR
    display_order: int = 0
    is_final: bool = False
    final_type: Optional[str] = None
    probability: int = 0

    @property
    def is_won(self) -> bool:
        return self.is_final and self.final_type == FINAL_WON

    @property
    def is_lost(self) -> bool:
        return self.is_final and self.final_type == FINAL_LOST


@dataclass(frozen=True)
class DealState:
    """The mutable part of a deal, as a value."""
    funnel_id: str
    stage_id: str
    entered_stage_at: datetime
    closed_at: Optional[datetime] = None
    close_reason_id: Optional[str] = None


def entry_trigger_kinds(stage: Stage) -> list[str]:
    """Trigger kinds raised by entering `stage`: on_stage_enter plus won/lost when terminal."""
    kinds = [ON_STAGE_ENTER]
    if stage.is_final and stage.final_type in FINAL_TRIGGER:
        kinds.append(FINAL_TRIGGER[stage.final_type])
    return kinds


def transition(
    state: DealState,
    target: Stage,
    *,
    now: datetime,
    close_reason_id: Optional[str] = None,
) -> tuple[DealState, list[str]]:
    """
    Move a deal into `target`.

    Returns (new_state, emitted_trigger_kinds). A move into the current
    stage is not a transition: the state is returned unchanged with no
    emitted kinds.

    closed_at is set iff the target stage is final; leaving a final stage
    re-opens the deal and clears closed_at and close_reason_id.
    """
    if target.funnel_id != state.funnel_id:
        raise StageTransitionError(
            f"Stage {target.id} belongs to funnel {target.funnel_id}, deal is in funnel {state.funnel_id}"
        )

    if target.id == state.stage_id:
        return state, []

    if target.is_final:
        closed_at = now
        reason = close_reason_id
    else:
        closed_at = None
        reason = None

    new_state = replace(
        state,
        stage_id=target.id,
        entered_stage_at=now,
        closed_at=closed_at,
        close_reason_id=reason,
    )
    return new_state, [ON_STAGE_EXIT] + entry_trigger_kinds(target)
