"""
Automation action executor.

One handler per action_type. execute_rule() validates the rule's action
config, runs the handler and turns every outcome, including unexpected
exceptions, into a RuleOutcome. Nothing raised by a handler escapes it.

Handlers that move the deal go through ctx.move(), backed by the
dispatcher, so the move is recorded in history and cascades into a
nested dispatch under the hop budget.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import quote

import httpx

from app.engine import configs as cfg
from app.engine.errors import ActionError, EngineError
from app.engine.intents import IntentClassifierUnavailable
from app.engine.interpolate import build_variables, render_template
from app.engine.models import AutomationRule, Deal, RuleOutcome
from app.engine.repository import EngineRepository
from app.engine.stages import FINAL_LOST, FINAL_WON
from app.engine.triggers import AutomationEvent

logger = logging.getLogger(__name__)

# (ctx, to_stage_id, note=..., close_reason_id=...) -> StageMove
MoveFn = Callable[..., Awaitable[Any]]
# (text, intents) -> 1-based index or 0
IntentFn = Callable[[str, list[str]], Awaitable[int]]


@dataclass
class ActionContext:
    repo: EngineRepository
    rule: AutomationRule
    deal: Deal
    event: AutomationEvent
    http: httpx.AsyncClient
    mover: MoveFn
    classify_intent: IntentFn
    strict: bool = False
    depth: int = 0
    webhook_timeout: float = 10.0
    form_base_url: str = ""
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    # Outcomes of rules fired by moves this action made
    cascade: list[RuleOutcome] = field(default_factory=list)

    def render(self, text: Optional[str]) -> str:
        variables = build_variables(self.deal, self.now)
        for key, value in self.event.custom_data.items():
            variables.setdefault(str(key), "" if value is None else str(value))
        return render_template(text, variables)

    async def move(self, to_stage_id: str, *, note: str, close_reason_id: Optional[str] = None) -> Any:
        return await self.mover(self, to_stage_id, note=note, close_reason_id=close_reason_id)


Handler = Callable[[ActionContext, Any], Awaitable[Optional[dict[str, Any]]]]


def _noop(ctx: ActionContext, reason: str) -> dict[str, Any]:
    """An action with nothing to do: success when lenient, failure when strict."""
    if ctx.strict:
        raise ActionError(reason)
    logger.info(json.dumps({
        "event": "automation_action_noop",
        "rule_id": ctx.rule.id,
        "action_type": ctx.rule.action_type,
        "reason": reason,
    }))
    return {"noop": reason}


# ---------------------------------------------------------------------------
# Messaging (delivery is an external collaborator, not wired here)
# ---------------------------------------------------------------------------

async def _send_message(ctx: ActionContext, config: cfg.SendMessageConfig) -> dict[str, Any]:
    text = ctx.render(config.message)
    logger.info(json.dumps({
        "event": "send_message_stub",
        "deal_id": ctx.deal.id,
        "contact_id": ctx.deal.contact_id,
        "chars": len(text),
    }))
    return {"message": text, "delivered": False}


async def _send_template(ctx: ActionContext, config: cfg.SendTemplateConfig) -> dict[str, Any]:
    logger.info(json.dumps({
        "event": "send_template_stub",
        "deal_id": ctx.deal.id,
        "template_id": config.template_id,
    }))
    return {"template_id": config.template_id, "delivered": False}


def build_form_link(base_url: str, slug: str, params: list[tuple[str, str]]) -> str:
    """Public form URL with prefill values as path segments: /form/{slug}/k=v/..."""
    url = f"{base_url.rstrip('/')}/form/{quote(slug, safe='')}"
    segments = [f"{quote(k, safe='')}={quote(v, safe='')}" for k, v in params]
    return "/".join([url, *segments])


async def _send_form_link(ctx: ActionContext, config: cfg.SendFormLinkConfig) -> dict[str, Any]:
    form = await ctx.repo.get_published_form(config.form_id)
    if not form:
        raise ActionError("Form not found or not published")
    contact = ctx.deal.contact
    if not contact or not contact.phone:
        raise ActionError("Contact has no phone")

    params = []
    for param in config.params:
        key = param.key.strip()
        value = ctx.render(param.value)
        if key and value:
            params.append((key, value))

    link = build_form_link(ctx.form_base_url, form["slug"], params)
    text = ctx.render(config.message).replace("{{link}}", link)
    logger.info(json.dumps({
        "event": "send_form_link_stub",
        "deal_id": ctx.deal.id,
        "form_id": config.form_id,
        "link": link,
    }))
    return {"form_id": config.form_id, "link": link, "message": text, "delivered": False}


async def _notify_user(ctx: ActionContext, config: cfg.NotifyUserConfig) -> dict[str, Any]:
    logger.info(json.dumps({
        "event": "notify_user_stub",
        "deal_id": ctx.deal.id,
        "user_id": config.user_id or ctx.deal.owner_id,
    }))
    return {"notified": False, "message": ctx.render(config.message)}


# ---------------------------------------------------------------------------
# Contact tags
# ---------------------------------------------------------------------------

async def _add_tag(ctx: ActionContext, config: cfg.TagActionConfig) -> dict[str, Any]:
    contact_id = ctx.deal.contact_id
    if not contact_id or not (config.tag_id or config.tag_name):
        return _noop(ctx, "no contact or tag configured")

    tag_id = config.tag_id or await ctx.repo.find_or_create_tag(ctx.deal.owner_id, config.tag_name)
    if not tag_id:
        raise ActionError("Tag not found")

    await ctx.repo.attach_tag(contact_id, tag_id)
    return {"tag_id": tag_id}


async def _remove_tag(ctx: ActionContext, config: cfg.TagActionConfig) -> dict[str, Any]:
    contact_id = ctx.deal.contact_id
    if not contact_id or not (config.tag_id or config.tag_name):
        return _noop(ctx, "no contact or tag configured")

    tag_id = config.tag_id or await ctx.repo.find_tag(ctx.deal.owner_id, config.tag_name)
    if not tag_id:
        return _noop(ctx, f"tag not found: {config.tag_name}")

    removed = await ctx.repo.detach_tag(contact_id, tag_id)
    return {"tag_id": tag_id, "removed": removed}


# ---------------------------------------------------------------------------
# Stage moves
# ---------------------------------------------------------------------------

async def _move_stage(ctx: ActionContext, config: cfg.MoveStageConfig) -> dict[str, Any]:
    move = await ctx.move(
        config.target_stage_id,
        note=f"Moved automatically by: {ctx.rule.name}",
    )
    return {"moved": move.moved, "to_stage_id": move.to_stage_id}


async def _close_deal(ctx: ActionContext, config: cfg.CloseDealConfig) -> dict[str, Any]:
    final_type = FINAL_WON if ctx.rule.action_type == cfg.CLOSE_DEAL_WON else FINAL_LOST
    stage = await ctx.repo.find_final_stage(ctx.deal.funnel_id, final_type)
    if stage is None:
        return _noop(ctx, f"funnel has no final stage of type {final_type}")

    move = await ctx.move(
        stage.id,
        note=f"Closed automatically as {final_type} by: {ctx.rule.name}",
        close_reason_id=config.close_reason_id,
    )
    return {"moved": move.moved, "to_stage_id": stage.id, "final_type": final_type}


async def _ai_analyze_and_move(ctx: ActionContext, config: cfg.AiAnalyzeAndMoveConfig) -> dict[str, Any]:
    text = ctx.event.message_text
    if not text:
        raise ActionError("No message content for AI analysis")
    if not config.intent_mappings and not config.default_stage_id:
        raise ActionError("No intent mappings configured")

    index = 0
    if config.intent_mappings:
        try:
            index = await ctx.classify_intent(text, [m.intent for m in config.intent_mappings])
        except IntentClassifierUnavailable as e:
            raise ActionError("AI not configured") from e
        except Exception as e:
            raise ActionError(f"AI analysis failed: {e}") from e

    intent = None
    if 0 < index <= len(config.intent_mappings):
        mapping = config.intent_mappings[index - 1]
        intent = mapping.intent
        target = mapping.target_stage_id
    else:
        target = config.default_stage_id

    if not target or target == ctx.deal.stage_id:
        return {"intent": intent, "moved": False}

    if intent:
        note = f'Moved by AI (detected intent: "{intent}"): {ctx.rule.name}'
    else:
        note = f"Moved by AI (default stage): {ctx.rule.name}"
    move = await ctx.move(target, note=note)
    return {"intent": intent, "moved": move.moved, "to_stage_id": target}


# ---------------------------------------------------------------------------
# Deal fields
# ---------------------------------------------------------------------------

async def _set_custom_field(ctx: ActionContext, config: cfg.SetCustomFieldConfig) -> dict[str, Any]:
    await ctx.repo.merge_custom_field(ctx.deal.id, config.field_key, config.field_value)
    return {"field_key": config.field_key}


async def _set_deal_value(ctx: ActionContext, config: cfg.SetDealValueConfig) -> dict[str, Any]:
    await ctx.repo.update_deal_value(ctx.deal.id, config.value)
    return {"value": str(config.value)}


async def _change_responsible(ctx: ActionContext, config: cfg.ChangeResponsibleConfig) -> dict[str, Any]:
    # Deals have no responsible column yet; only the intent is recorded.
    logger.info(json.dumps({
        "event": "change_responsible_requested",
        "deal_id": ctx.deal.id,
        "responsible_id": config.responsible_id,
    }))
    return _noop(ctx, "change_responsible is not supported")


# ---------------------------------------------------------------------------
# Notes, tasks, chatbot flows
# ---------------------------------------------------------------------------

async def _add_note(ctx: ActionContext, config: cfg.AddNoteConfig) -> dict[str, Any]:
    content = ctx.render(config.note_content)
    if not content or not ctx.deal.contact_id:
        return _noop(ctx, "empty note or no contact")

    note_id = await ctx.repo.insert_note(
        owner_id=ctx.deal.owner_id,
        contact_id=ctx.deal.contact_id,
        deal_id=ctx.deal.id,
        conversation_id=ctx.deal.conversation_id,
        content=content,
    )
    return {"note_id": note_id}


async def _create_task(ctx: ActionContext, config: cfg.CreateTaskConfig) -> dict[str, Any]:
    title = ctx.render(config.task_title)
    if not title:
        return _noop(ctx, "empty task title")

    due_date = (ctx.now + timedelta(days=config.due_days)).date()
    task_id = await ctx.repo.insert_task(
        owner_id=ctx.deal.owner_id,
        deal_id=ctx.deal.id,
        title=title,
        description=ctx.render(config.task_description),
        due_date=due_date,
        priority=config.priority,
    )
    return {"task_id": task_id, "due_date": due_date.isoformat()}


async def _trigger_chatbot_flow(ctx: ActionContext, config: cfg.TriggerChatbotFlowConfig) -> dict[str, Any]:
    deal = ctx.deal
    if not deal.contact_id:
        raise ActionError("Missing flow_id or contact_id")

    flow = await ctx.repo.get_chatbot_flow(config.flow_id)
    if not flow or not flow.get("is_active"):
        raise ActionError("Chatbot flow not found or inactive")

    contact = deal.contact
    execution_id = await ctx.repo.insert_chatbot_execution(
        flow_id=config.flow_id,
        contact_id=deal.contact_id,
        deal_id=deal.id,
        conversation_id=deal.conversation_id,
        owner_id=deal.owner_id,
        trigger_automation_id=ctx.rule.id,
        variables={
            "deal_title": deal.title,
            "deal_value": str(deal.value),
            "contact_name": contact.name if contact else None,
            "contact_phone": contact.phone if contact else None,
            "funnel_name": deal.funnel_name,
            "stage_name": deal.stage.name if deal.stage else None,
        },
    )
    return {"execution_id": execution_id, "flow_name": flow.get("name")}


# ---------------------------------------------------------------------------
# Outbound webhook
# ---------------------------------------------------------------------------

def build_webhook_payload(ctx: ActionContext) -> dict[str, Any]:
    deal = ctx.deal
    contact = deal.contact
    return {
        "event": ctx.rule.trigger_type,
        "automation_name": ctx.rule.name,
        "deal": {
            "id": deal.id,
            "title": deal.title,
            "value": float(deal.value),
            "stage": deal.stage.name if deal.stage else None,
            "funnel": deal.funnel_name,
        },
        "contact": {
            "id": deal.contact_id,
            "name": contact.name if contact else None,
            "phone": contact.phone if contact else None,
            "email": contact.email if contact else None,
        },
        "timestamp": ctx.now.isoformat(),
    }


async def _webhook_request(ctx: ActionContext, config: cfg.WebhookRequestConfig) -> dict[str, Any]:
    payload = build_webhook_payload(ctx)
    headers = {"Content-Type": "application/json", **config.headers}

    try:
        resp = await ctx.http.request(
            config.method,
            config.webhook_url,
            json=payload if config.method != "GET" else None,
            headers=headers,
            timeout=ctx.webhook_timeout,
        )
    except httpx.TimeoutException as e:
        raise ActionError(f"Webhook request timed out after {ctx.webhook_timeout}s") from e
    except httpx.HTTPError as e:
        raise ActionError(f"Webhook request failed: {e.__class__.__name__}") from e

    logger.info(json.dumps({
        "event": "webhook_request_response",
        "rule_id": ctx.rule.id,
        "status": resp.status_code,
        "body": resp.text[:300],
    }))

    if not resp.is_success:
        raise ActionError(f"Webhook responded with status {resp.status_code}")
    return {"status": resp.status_code}


ACTION_HANDLERS: dict[str, Handler] = {
    cfg.SEND_MESSAGE: _send_message,
    cfg.SEND_TEMPLATE: _send_template,
    cfg.SEND_FORM_LINK: _send_form_link,
    cfg.ADD_TAG: _add_tag,
    cfg.REMOVE_TAG: _remove_tag,
    cfg.MOVE_STAGE: _move_stage,
    cfg.NOTIFY_USER: _notify_user,
    cfg.TRIGGER_CHATBOT_FLOW: _trigger_chatbot_flow,
    cfg.SET_CUSTOM_FIELD: _set_custom_field,
    cfg.SET_DEAL_VALUE: _set_deal_value,
    cfg.CHANGE_RESPONSIBLE: _change_responsible,
    cfg.ADD_NOTE: _add_note,
    cfg.WEBHOOK_REQUEST: _webhook_request,
    cfg.CREATE_TASK: _create_task,
    cfg.CLOSE_DEAL_WON: _close_deal,
    cfg.CLOSE_DEAL_LOST: _close_deal,
    cfg.AI_ANALYZE_AND_MOVE: _ai_analyze_and_move,
}


async def execute_rule(ctx: ActionContext) -> RuleOutcome:
    """Run one matched rule. Always returns an outcome; never raises."""
    rule = ctx.rule
    outcome = RuleOutcome(
        rule_id=rule.id,
        rule_name=rule.name,
        action_type=rule.action_type,
        success=False,
        depth=ctx.depth,
    )

    handler = ACTION_HANDLERS.get(rule.action_type)
    if handler is None:
        logger.warning("Unknown action type %s on automation %s", rule.action_type, rule.id)
        outcome.error = "Unknown action type"
        return outcome

    try:
        config = cfg.parse_action_config(rule.action_type, rule.action_config)
        outcome.detail = await handler(ctx, config)
        outcome.success = True
    except EngineError as e:
        outcome.error = str(e)
        logger.warning(json.dumps({
            "event": "automation_action_failed",
            "rule_id": rule.id,
            "action_type": rule.action_type,
            "deal_id": ctx.deal.id,
            "error": outcome.error,
        }))
    except Exception as e:
        outcome.error = str(e) or e.__class__.__name__
        logger.exception("Error executing automation %s (%s)", rule.id, rule.action_type)

    if outcome.success:
        logger.info(json.dumps({
            "event": "automation_rule_executed",
            "rule_id": rule.id,
            "action_type": rule.action_type,
            "deal_id": ctx.deal.id,
            "depth": ctx.depth,
        }))
    return outcome
