from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, AsyncIterator, Optional

import asyncpg
from fastapi import APIRouter, Depends, HTTPException
from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from app.db import get_conn
from app.engine.configs import validate_rule_configs
from app.engine.deals import create_deal, create_funnel, create_stage
from app.engine.dispatcher import move_deal, process_event, receive_webhook, run_for_existing_deals
from app.engine.errors import (
    ConfigValidationError,
    DealNotFound,
    EngineError,
    FunnelNotFound,
    InvalidRuleError,
    RuleNotFound,
    StageNotFound,
    StageTransitionError,
    WebhookAuthError,
)
from app.engine.repository import EngineRepository, PgEngineRepository
from app.engine.triggers import AutomationEvent

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/engine", tags=["engine"])


async def get_repo(conn: asyncpg.Connection = Depends(get_conn)) -> AsyncIterator[EngineRepository]:
    yield PgEngineRepository(conn)


def _http_error(e: EngineError) -> HTTPException:
    if isinstance(e, (DealNotFound, StageNotFound, FunnelNotFound, RuleNotFound)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, WebhookAuthError):
        return HTTPException(status_code=401, detail=str(e))
    if isinstance(e, StageTransitionError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ConfigValidationError):
        return HTTPException(status_code=422, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


def _alias(*names: str) -> Any:
    return Field(default=None, validation_alias=AliasChoices(*names))


class _Body(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class ProcessEventBody(_Body):
    deal_id: str = Field(min_length=1, validation_alias=AliasChoices("deal_id", "dealId"))
    from_stage_id: Optional[str] = _alias("from_stage_id", "fromStageId")
    to_stage_id: Optional[str] = _alias("to_stage_id", "toStageId")
    trigger_type: Optional[str] = _alias("trigger_type", "triggerType")
    message_text: Optional[str] = _alias("message_text", "messageText", "messageContent")
    tag_name: Optional[str] = _alias("tag_name", "tagName")
    field_key: Optional[str] = _alias("field_key", "fieldKey", "customFieldKey")
    field_value: Optional[str] = _alias("field_value", "fieldValue", "customFieldValue")
    is_new_deal: bool = Field(default=False, validation_alias=AliasChoices("is_new_deal", "isNewDeal"))


class CreateFunnelBody(_Body):
    name: str = Field(min_length=1)
    owner_id: Optional[str] = _alias("owner_id", "ownerId")
    description: Optional[str] = None
    color: str = "#3B82F6"
    with_default_stages: bool = Field(
        default=True,
        validation_alias=AliasChoices("with_default_stages", "withDefaultStages"),
    )


class CreateStageBody(_Body):
    name: str = Field(min_length=1)
    color: Optional[str] = None
    is_final: bool = Field(default=False, validation_alias=AliasChoices("is_final", "isFinal"))
    final_type: Optional[str] = _alias("final_type", "finalType")
    probability: int = Field(default=0, ge=0, le=100)


class CreateDealBody(_Body):
    funnel_id: str = Field(min_length=1, validation_alias=AliasChoices("funnel_id", "funnelId"))
    stage_id: str = Field(min_length=1, validation_alias=AliasChoices("stage_id", "stageId"))
    contact_id: Optional[str] = _alias("contact_id", "contactId")
    owner_id: Optional[str] = _alias("owner_id", "ownerId")
    conversation_id: Optional[str] = _alias("conversation_id", "conversationId")
    title: Optional[str] = None
    value: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = "BRL"
    custom_fields: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("custom_fields", "customFields"),
    )
    dispatch: bool = True


class MoveDealBody(_Body):
    to_stage_id: str = Field(min_length=1, validation_alias=AliasChoices("to_stage_id", "toStageId", "stage_id"))
    notes: Optional[str] = None
    close_reason_id: Optional[str] = _alias("close_reason_id", "closeReasonId")
    dispatch: bool = True


class CreateAutomationBody(_Body):
    funnel_id: str = Field(min_length=1, validation_alias=AliasChoices("funnel_id", "funnelId"))
    stage_id: Optional[str] = _alias("stage_id", "stageId")
    owner_id: Optional[str] = _alias("owner_id", "ownerId")
    name: str = Field(min_length=1)
    is_active: bool = Field(default=True, validation_alias=AliasChoices("is_active", "isActive"))
    trigger_type: str = Field(validation_alias=AliasChoices("trigger_type", "triggerType"))
    trigger_config: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("trigger_config", "triggerConfig"),
    )
    action_type: str = Field(validation_alias=AliasChoices("action_type", "actionType"))
    action_config: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("action_config", "actionConfig"),
    )


class InboundWebhookBody(_Body):
    deal_id: Optional[str] = _alias("deal_id", "dealId")
    contact_id: Optional[str] = _alias("contact_id", "contactId")
    contact_phone: Optional[str] = _alias("contact_phone", "contactPhone", "phone")
    custom_data: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("custom_data", "customData"),
    )


@router.post("/automations/process")
async def process_automations(body: ProcessEventBody, repo: EngineRepository = Depends(get_repo)):
    event = AutomationEvent(**body.model_dump())
    try:
        result = await process_event(repo, event)
    except EngineError as e:
        raise _http_error(e)
    return result.to_dict()


@router.post("/automations")
async def create_automation(body: CreateAutomationBody, repo: EngineRepository = Depends(get_repo)):
    try:
        trigger_config, action_config = validate_rule_configs(
            body.trigger_type, body.trigger_config, body.action_type, body.action_config,
        )
        if await repo.get_funnel(body.funnel_id) is None:
            raise FunnelNotFound(body.funnel_id)
        if body.stage_id:
            stage = await repo.get_stage(body.stage_id)
            if stage is None:
                raise StageNotFound(body.stage_id)
            if stage.funnel_id != body.funnel_id:
                raise ConfigValidationError(f"Stage {body.stage_id} does not belong to funnel {body.funnel_id}")
    except EngineError as e:
        raise _http_error(e)

    rule = await repo.insert_rule(
        owner_id=body.owner_id,
        funnel_id=body.funnel_id,
        stage_id=body.stage_id,
        name=body.name,
        is_active=body.is_active,
        trigger_type=body.trigger_type,
        trigger_config=trigger_config,
        action_type=body.action_type,
        action_config=action_config,
    )
    logger.info("Automation %s saved (%s -> %s)", rule.id, rule.trigger_type, rule.action_type)
    return {"id": rule.id, "trigger_config": rule.trigger_config, "action_config": rule.action_config}


@router.post("/automations/{rule_id}/run-existing")
async def run_existing(rule_id: str, repo: EngineRepository = Depends(get_repo)):
    try:
        run = await run_for_existing_deals(repo, rule_id)
    except (RuleNotFound, InvalidRuleError) as e:
        raise _http_error(e)
    return run.to_dict()


@router.post("/automations/{rule_id}/webhook")
async def automation_webhook(
    rule_id: str,
    body: Optional[InboundWebhookBody] = None,
    token: Optional[str] = None,
    repo: EngineRepository = Depends(get_repo),
):
    body = body or InboundWebhookBody()
    try:
        result = await receive_webhook(
            repo,
            rule_id,
            token=token,
            deal_id=body.deal_id,
            contact_id=body.contact_id,
            contact_phone=body.contact_phone,
            custom_data=body.custom_data,
        )
    except EngineError as e:
        raise _http_error(e)
    return {
        "success": True,
        "automation_id": rule_id,
        "deal_id": result.deal_id,
        "results": [r.to_dict() for r in result.results],
    }


@router.post("/funnels")
async def create_funnel_route(body: CreateFunnelBody, repo: EngineRepository = Depends(get_repo)):
    funnel = await create_funnel(
        repo,
        name=body.name,
        owner_id=body.owner_id,
        description=body.description,
        color=body.color,
        with_default_stages=body.with_default_stages,
    )
    return {
        "id": funnel.id,
        "name": funnel.name,
        "stages": [
            {"id": s.id, "name": s.name, "display_order": s.display_order, "final_type": s.final_type}
            for s in funnel.stages
        ],
    }


@router.post("/funnels/{funnel_id}/stages")
async def create_stage_route(funnel_id: str, body: CreateStageBody, repo: EngineRepository = Depends(get_repo)):
    try:
        stage = await create_stage(
            repo,
            funnel_id=funnel_id,
            name=body.name,
            color=body.color,
            is_final=body.is_final,
            final_type=body.final_type,
            probability=body.probability,
        )
    except EngineError as e:
        raise _http_error(e)
    return {"id": stage.id, "display_order": stage.display_order, "color": stage.color}


@router.post("/deals")
async def create_deal_route(body: CreateDealBody, repo: EngineRepository = Depends(get_repo)):
    try:
        deal = await create_deal(
            repo,
            funnel_id=body.funnel_id,
            stage_id=body.stage_id,
            contact_id=body.contact_id,
            owner_id=body.owner_id,
            title=body.title,
            value=body.value,
            currency=body.currency,
            conversation_id=body.conversation_id,
            custom_fields=body.custom_fields,
        )
        results: list[dict[str, Any]] = []
        if body.dispatch:
            result = await process_event(repo, AutomationEvent(deal_id=deal.id, is_new_deal=True))
            results = [r.to_dict() for r in result.results]
    except EngineError as e:
        raise _http_error(e)

    return {
        "id": deal.id,
        "stage_id": deal.stage_id,
        "closed_at": deal.closed_at.isoformat() if deal.closed_at else None,
        "results": results,
    }


@router.post("/deals/{deal_id}/move")
async def move_deal_route(deal_id: str, body: MoveDealBody, repo: EngineRepository = Depends(get_repo)):
    try:
        result = await move_deal(
            repo,
            deal_id,
            body.to_stage_id,
            note=body.notes,
            close_reason_id=body.close_reason_id,
            dispatch=body.dispatch,
        )
    except EngineError as e:
        raise _http_error(e)
    return result.to_dict()


@router.get("/deals/{deal_id}/history")
async def deal_history(deal_id: str, repo: EngineRepository = Depends(get_repo)):
    if await repo.get_deal(deal_id) is None:
        raise HTTPException(status_code=404, detail=f"Deal not found: {deal_id}")
    entries = await repo.list_history(deal_id)
    return {
        "deal_id": deal_id,
        "history": [
            {
                "id": h.id,
                "from_stage_id": h.from_stage_id,
                "to_stage_id": h.to_stage_id,
                "notes": h.notes,
                "created_at": h.created_at.isoformat(),
            }
            for h in entries
        ],
    }
