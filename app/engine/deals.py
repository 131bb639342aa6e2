"""
Engine write layer: funnels, stages, deals and stage moves.

apply_stage_move() is the only place a deal changes stage. It runs the
pure state machine, then writes the deal row and exactly one history row
in one transaction. Dispatching automations for the move is the caller's
job (app.engine.dispatcher).
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from app.engine.errors import (
    ConfigValidationError,
    FunnelNotFound,
    DealNotFound,
    StageNotFound,
    StageTransitionError,
    StaleDealError,
)
from app.engine.models import Deal, Funnel
from app.engine.repository import EngineRepository
from app.engine.stages import (
    DEFAULT_STAGE_COLOR,
    DEFAULT_STAGES,
    FINAL_TYPES,
    DealState,
    Stage,
    transition,
)

logger = logging.getLogger(__name__)


@dataclass
class StageMove:
    """Outcome of apply_stage_move()."""
    deal_id: str
    from_stage_id: str
    to_stage_id: str
    moved: bool
    trigger_kinds: list[str] = field(default_factory=list)
    history_id: Optional[str] = None
    closed_at: Optional[datetime] = None


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def create_funnel(
    repo: EngineRepository,
    *,
    name: str,
    owner_id: Optional[str] = None,
    description: Optional[str] = None,
    color: str = DEFAULT_STAGE_COLOR,
    with_default_stages: bool = True,
) -> Funnel:
    """Create a funnel, seeded with the six default stages unless told otherwise."""
    async with repo.transaction():
        funnel = await repo.insert_funnel(
            owner_id=owner_id,
            name=name,
            description=description,
            color=color,
        )
        if with_default_stages:
            for default in DEFAULT_STAGES:
                stage = await repo.insert_stage(
                    funnel_id=funnel.id,
                    name=default["name"],
                    color=default["color"],
                    display_order=default["display_order"],
                    is_final=default.get("is_final", False),
                    final_type=default.get("final_type"),
                    probability=default["probability"],
                )
                funnel.stages.append(stage)
    logger.info(json.dumps({
        "event": "funnel_created",
        "funnel_id": funnel.id,
        "stage_count": len(funnel.stages),
    }))
    return funnel


async def create_stage(
    repo: EngineRepository,
    *,
    funnel_id: str,
    name: str,
    color: Optional[str] = None,
    is_final: bool = False,
    final_type: Optional[str] = None,
    probability: int = 0,
) -> Stage:
    """Append a stage at the end of the funnel."""
    if await repo.get_funnel(funnel_id) is None:
        raise FunnelNotFound(funnel_id)
    if is_final and final_type not in FINAL_TYPES:
        raise ConfigValidationError(f"Final stage needs final_type in {sorted(FINAL_TYPES)}")
    if not is_final:
        final_type = None

    current_max = await repo.max_stage_order(funnel_id)
    display_order = 0 if current_max is None else current_max + 1
    return await repo.insert_stage(
        funnel_id=funnel_id,
        name=name,
        color=color or DEFAULT_STAGE_COLOR,
        display_order=display_order,
        is_final=is_final,
        final_type=final_type,
        probability=probability,
    )


async def create_deal(
    repo: EngineRepository,
    *,
    funnel_id: str,
    stage_id: str,
    contact_id: Optional[str] = None,
    owner_id: Optional[str] = None,
    title: Optional[str] = None,
    value: Decimal = Decimal("0"),
    currency: str = "BRL",
    conversation_id: Optional[str] = None,
    custom_fields: Optional[dict[str, Any]] = None,
) -> Deal:
    """Create a deal directly into `stage_id` (any stage of the funnel)."""
    stage = await repo.get_stage(stage_id)
    if stage is None:
        raise StageNotFound(stage_id)
    if stage.funnel_id != funnel_id:
        raise StageTransitionError(f"Stage {stage_id} does not belong to funnel {funnel_id}")

    now = _now()
    state = DealState(
        funnel_id=funnel_id,
        stage_id=stage_id,
        entered_stage_at=now,
        closed_at=now if stage.is_final else None,
    )
    deal_id = await repo.insert_deal(
        funnel_id=funnel_id,
        stage_id=stage_id,
        contact_id=contact_id,
        owner_id=owner_id,
        title=title,
        value=value,
        currency=currency,
        conversation_id=conversation_id,
        custom_fields=custom_fields or {},
        state=state,
    )
    deal = await repo.get_deal(deal_id)
    if deal is None:
        raise DealNotFound(deal_id)
    return deal


async def apply_stage_move(
    repo: EngineRepository,
    deal: Deal,
    to_stage_id: str,
    *,
    note: Optional[str] = None,
    close_reason_id: Optional[str] = None,
) -> StageMove:
    """
    Move `deal` into `to_stage_id` and append one history row.

    A move into the current stage writes nothing and returns moved=False.
    Raises StageNotFound, StageTransitionError (other funnel) or
    StaleDealError (deal changed since it was loaded).
    """
    target = await repo.get_stage(to_stage_id)
    if target is None:
        raise StageNotFound(to_stage_id)

    new_state, emitted = transition(deal.state, target, now=_now(), close_reason_id=close_reason_id)
    if not emitted:
        return StageMove(
            deal_id=deal.id,
            from_stage_id=deal.stage_id,
            to_stage_id=to_stage_id,
            moved=False,
        )

    async with repo.transaction():
        updated = await repo.update_deal_state(
            deal.id,
            expected_stage_id=deal.stage_id,
            expected_version=deal.version,
            state=new_state,
        )
        if not updated:
            raise StaleDealError(f"Deal {deal.id} changed stage concurrently")
        history_id = await repo.insert_history(
            deal_id=deal.id,
            from_stage_id=deal.stage_id,
            to_stage_id=target.id,
            notes=note,
        )

    logger.info(json.dumps({
        "event": "deal_stage_moved",
        "deal_id": deal.id,
        "from_stage_id": deal.stage_id,
        "to_stage_id": target.id,
        "closed": new_state.closed_at is not None,
    }))

    return StageMove(
        deal_id=deal.id,
        from_stage_id=deal.stage_id,
        to_stage_id=target.id,
        moved=True,
        trigger_kinds=emitted,
        history_id=history_id,
        closed_at=new_state.closed_at,
    )
