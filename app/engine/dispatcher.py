"""
Automation dispatch.

process_event() resolves an event into trigger kinds, matches the funnel's
active rules and runs every match in order. A rule that moves the deal
triggers a nested dispatch for that move; nesting is bounded by
settings.automation_max_hops and all outcomes come back in one flat list
tagged with their depth.

Top-level entry points hold a per-deal lock for the whole run so moves of
one deal are serialised within the process. Across processes the
compare-and-swap in apply_stage_move() rejects the stale writer.
"""
from __future__ import annotations

import asyncio
import hmac
import json
import logging
import re
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional, cast

import httpx

from app.config import settings
from app.engine.actions import ActionContext, IntentFn, execute_rule
from app.engine.configs import DEAL_MUTATING_ACTIONS, WebhookTriggerConfig, parse_trigger_config
from app.engine.deals import StageMove, apply_stage_move
from app.engine.errors import (
    ActionError,
    DealNotFound,
    InvalidRuleError,
    RuleNotFound,
    StageNotFound,
    WebhookAuthError,
)
from app.engine.intents import classify_intent
from app.engine.matcher import match_rules
from app.engine.models import AutomationRule, Deal, RuleOutcome
from app.engine.repository import EngineRepository
from app.engine.stages import ON_EXISTING_DEALS, ON_WEBHOOK, Stage
from app.engine.trace_logger import log_dispatch_run
from app.engine.triggers import AutomationEvent, resolve_trigger_kinds

logger = logging.getLogger(__name__)

HOP_LIMIT_ERROR = "automation hop limit reached"

_deal_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def deal_lock(deal_id: str) -> asyncio.Lock:
    lock = _deal_locks.get(deal_id)
    if lock is None:
        lock = asyncio.Lock()
        _deal_locks[deal_id] = lock
    return lock


@dataclass
class DispatchResult:
    deal_id: str
    funnel_id: Optional[str] = None
    trigger_kinds: list[str] = field(default_factory=list)
    results: list[RuleOutcome] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": True,
            "deal_id": self.deal_id,
            "funnel_id": self.funnel_id,
            "trigger_kinds": sorted(set(self.trigger_kinds)),
            "processed": len(self.results),
            "results": [r.to_dict() for r in self.results],
        }


@dataclass
class MoveResult:
    move: StageMove
    dispatch: Optional[DispatchResult] = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "deal_id": self.move.deal_id,
            "from_stage_id": self.move.from_stage_id,
            "to_stage_id": self.move.to_stage_id,
            "moved": self.move.moved,
            "trigger_kinds": self.move.trigger_kinds,
            "closed_at": self.move.closed_at.isoformat() if self.move.closed_at else None,
            "results": [],
        }
        if self.dispatch is not None:
            out["results"] = [r.to_dict() for r in self.dispatch.results]
        return out


@dataclass
class ExistingDealsRun:
    rule_id: str
    deals: list[DispatchResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "processed": len(self.deals),
            "succeeded": sum(1 for d in self.deals if all(r.success for r in d.results)),
            "deals": [d.to_dict() for d in self.deals],
        }


class AutomationDispatcher:
    """One dispatch run: shared HTTP client, strictness and hop budget."""

    def __init__(
        self,
        repo: EngineRepository,
        http: httpx.AsyncClient,
        *,
        strict: bool = False,
        max_hops: int = 5,
        classify: IntentFn = classify_intent,
        webhook_timeout: float = 10.0,
        form_base_url: str = "",
    ):
        self.repo = repo
        self.http = http
        self.strict = strict
        self.max_hops = max_hops
        self.classify = classify
        self.webhook_timeout = webhook_timeout
        self.form_base_url = form_base_url

    async def dispatch(self, event: AutomationEvent, *, depth: int = 0) -> DispatchResult:
        deal = await self.repo.get_deal(event.deal_id)
        if deal is None:
            raise DealNotFound(event.deal_id)

        to_stage = None
        if event.to_stage_id:
            to_stage = await self._funnel_stage(deal, event.to_stage_id)
        if event.from_stage_id:
            await self._funnel_stage(deal, event.from_stage_id)

        kinds = resolve_trigger_kinds(event, to_stage)
        result = DispatchResult(deal_id=deal.id, funnel_id=deal.funnel_id, trigger_kinds=kinds)
        if not kinds:
            return result

        rules = await self.repo.list_active_rules(deal.funnel_id, kinds)
        matched = match_rules(rules, event, kinds, deal.stage_id)

        for rule in matched:
            result.results.extend(await self.run_rule(rule, deal, event, depth=depth))
            if rule.action_type in DEAL_MUTATING_ACTIONS:
                refreshed = await self.repo.get_deal(deal.id)
                if refreshed is not None:
                    deal = refreshed
        return result

    async def _funnel_stage(self, deal: Deal, stage_id: str) -> Stage:
        # A stage of another funnel is treated as missing for this deal.
        stage = await self.repo.get_stage(stage_id)
        if stage is None or stage.funnel_id != deal.funnel_id:
            raise StageNotFound(stage_id)
        return stage

    async def run_rule(
        self,
        rule: AutomationRule,
        deal: Deal,
        event: AutomationEvent,
        *,
        depth: int = 0,
    ) -> list[RuleOutcome]:
        """The rule's own outcome followed by everything its moves cascaded into."""
        ctx = ActionContext(
            repo=self.repo,
            rule=rule,
            deal=deal,
            event=event,
            http=self.http,
            mover=self._move,
            classify_intent=self.classify,
            strict=self.strict,
            depth=depth,
            webhook_timeout=self.webhook_timeout,
            form_base_url=self.form_base_url,
            now=datetime.now(timezone.utc),
        )
        outcome = await execute_rule(ctx)
        return [outcome, *ctx.cascade]

    async def _move(
        self,
        ctx: ActionContext,
        to_stage_id: str,
        *,
        note: Optional[str] = None,
        close_reason_id: Optional[str] = None,
    ) -> StageMove:
        if ctx.depth + 1 > self.max_hops:
            logger.warning(json.dumps({
                "event": "automation_hop_limit",
                "deal_id": ctx.deal.id,
                "rule_id": ctx.rule.id,
                "depth": ctx.depth,
                "max_hops": self.max_hops,
            }))
            raise ActionError(HOP_LIMIT_ERROR)

        move = await apply_stage_move(
            self.repo,
            ctx.deal,
            to_stage_id,
            note=note,
            close_reason_id=close_reason_id,
        )
        if move.moved:
            nested = await self.dispatch(
                AutomationEvent(
                    deal_id=move.deal_id,
                    from_stage_id=move.from_stage_id,
                    to_stage_id=move.to_stage_id,
                ),
                depth=ctx.depth + 1,
            )
            ctx.cascade.extend(nested.results)
        return move


@asynccontextmanager
async def _http_client(http: Optional[httpx.AsyncClient]) -> AsyncIterator[httpx.AsyncClient]:
    if http is not None:
        yield http
        return
    async with httpx.AsyncClient(timeout=settings.webhook_timeout_seconds) as client:
        yield client


def _dispatcher(
    repo: EngineRepository,
    http: httpx.AsyncClient,
    strict: Optional[bool],
    max_hops: Optional[int],
    classify: Optional[IntentFn],
) -> AutomationDispatcher:
    return AutomationDispatcher(
        repo,
        http,
        strict=settings.automation_strict if strict is None else strict,
        max_hops=settings.automation_max_hops if max_hops is None else max_hops,
        classify=classify or classify_intent,
        webhook_timeout=settings.webhook_timeout_seconds,
        form_base_url=settings.form_base_url,
    )


async def process_event(
    repo: EngineRepository,
    event: AutomationEvent,
    *,
    http: Optional[httpx.AsyncClient] = None,
    strict: Optional[bool] = None,
    max_hops: Optional[int] = None,
    classify: Optional[IntentFn] = None,
) -> DispatchResult:
    """
    Dispatch one event for a deal.

    Raises DealNotFound / StageNotFound before any rule runs; failures of
    individual rules are reported in the result instead.
    """
    async with deal_lock(event.deal_id):
        async with _http_client(http) as client:
            dispatcher = _dispatcher(repo, client, strict, max_hops, classify)
            try:
                result = await dispatcher.dispatch(event)
            except Exception as e:
                logger.error("Dispatch failed for deal %s: %s", event.deal_id, e)
                log_dispatch_run(
                    source="process_event",
                    deal_id=event.deal_id,
                    trigger_kinds=[],
                    results=[],
                    event=event.to_dict(),
                    error=str(e),
                )
                raise

    log_dispatch_run(
        source="process_event",
        deal_id=result.deal_id,
        funnel_id=result.funnel_id,
        trigger_kinds=result.trigger_kinds,
        results=result.results,
        event=event.to_dict(),
    )
    return result


async def move_deal(
    repo: EngineRepository,
    deal_id: str,
    to_stage_id: str,
    *,
    note: Optional[str] = None,
    close_reason_id: Optional[str] = None,
    dispatch: bool = True,
    http: Optional[httpx.AsyncClient] = None,
    strict: Optional[bool] = None,
    max_hops: Optional[int] = None,
    classify: Optional[IntentFn] = None,
) -> MoveResult:
    """Manual stage move, followed by the dispatch for that move."""
    async with deal_lock(deal_id):
        deal = await repo.get_deal(deal_id)
        if deal is None:
            raise DealNotFound(deal_id)

        move = await apply_stage_move(repo, deal, to_stage_id, note=note, close_reason_id=close_reason_id)
        if not (dispatch and move.moved):
            return MoveResult(move=move)

        async with _http_client(http) as client:
            dispatcher = _dispatcher(repo, client, strict, max_hops, classify)
            result = await dispatcher.dispatch(
                AutomationEvent(
                    deal_id=deal_id,
                    from_stage_id=move.from_stage_id,
                    to_stage_id=move.to_stage_id,
                )
            )

    log_dispatch_run(
        source="move_deal",
        deal_id=deal_id,
        funnel_id=result.funnel_id,
        trigger_kinds=result.trigger_kinds,
        results=result.results,
    )
    return MoveResult(move=move, dispatch=result)


async def run_for_existing_deals(
    repo: EngineRepository,
    rule_id: str,
    *,
    http: Optional[httpx.AsyncClient] = None,
    strict: Optional[bool] = None,
    max_hops: Optional[int] = None,
    classify: Optional[IntentFn] = None,
) -> ExistingDealsRun:
    """Apply an on_existing_deals rule to every open deal in its funnel (and stage, if scoped)."""
    rule = await repo.get_rule(rule_id)
    if rule is None or not rule.is_active:
        raise RuleNotFound(rule_id)
    if rule.trigger_type != ON_EXISTING_DEALS:
        raise InvalidRuleError(f"Automation {rule_id} is not an {ON_EXISTING_DEALS} automation")

    run = ExistingDealsRun(rule_id=rule_id)
    deal_ids = await repo.list_open_deal_ids(rule.funnel_id, rule.stage_id)

    async with _http_client(http) as client:
        dispatcher = _dispatcher(repo, client, strict, max_hops, classify)
        for deal_id in deal_ids:
            async with deal_lock(deal_id):
                deal = await repo.get_deal(deal_id)
                if deal is None or deal.closed_at is not None:
                    continue
                event = AutomationEvent(deal_id=deal_id, trigger_type=ON_EXISTING_DEALS)
                outcomes = await dispatcher.run_rule(rule, deal, event)
            deal_result = DispatchResult(
                deal_id=deal_id,
                funnel_id=rule.funnel_id,
                trigger_kinds=[ON_EXISTING_DEALS],
                results=outcomes,
            )
            run.deals.append(deal_result)
            log_dispatch_run(
                source="run_existing",
                deal_id=deal_id,
                funnel_id=rule.funnel_id,
                trigger_kinds=deal_result.trigger_kinds,
                results=outcomes,
            )

    logger.info(json.dumps({
        "event": "existing_deals_run",
        "rule_id": rule_id,
        "deal_count": len(run.deals),
    }))
    return run


async def _resolve_webhook_deal(
    repo: EngineRepository,
    rule: AutomationRule,
    *,
    deal_id: Optional[str],
    contact_id: Optional[str],
    contact_phone: Optional[str],
) -> Optional[str]:
    # First identifier present wins: deal_id, then contact_id, then contact_phone.
    if deal_id:
        deal = await repo.get_deal(deal_id)
        return deal.id if deal is not None and deal.funnel_id == rule.funnel_id else None
    if contact_id:
        return await repo.find_latest_deal_id(rule.funnel_id, contact_id)
    if contact_phone:
        digits = re.sub(r"\D", "", contact_phone)
        if not digits:
            return None
        funnel = await repo.get_funnel(rule.funnel_id)
        found = await repo.find_contact_by_phone(funnel.owner_id if funnel else None, digits)
        if found:
            return await repo.find_latest_deal_id(rule.funnel_id, found)
    return None


async def receive_webhook(
    repo: EngineRepository,
    rule_id: str,
    *,
    token: Optional[str] = None,
    deal_id: Optional[str] = None,
    contact_id: Optional[str] = None,
    contact_phone: Optional[str] = None,
    custom_data: Optional[dict[str, Any]] = None,
    http: Optional[httpx.AsyncClient] = None,
    strict: Optional[bool] = None,
    max_hops: Optional[int] = None,
    classify: Optional[IntentFn] = None,
) -> DispatchResult:
    """Run an on_webhook rule for the deal an inbound call identifies."""
    rule = await repo.get_rule(rule_id)
    if rule is None or not rule.is_active or rule.trigger_type != ON_WEBHOOK:
        raise RuleNotFound(rule_id)

    config = cast(WebhookTriggerConfig, parse_trigger_config(ON_WEBHOOK, rule.trigger_config))
    if config.security_token and not hmac.compare_digest(config.security_token.encode(), (token or "").encode()):
        logger.warning(json.dumps({"event": "webhook_token_rejected", "rule_id": rule_id}))
        raise WebhookAuthError("Invalid security token")

    resolved = await _resolve_webhook_deal(
        repo, rule, deal_id=deal_id, contact_id=contact_id, contact_phone=contact_phone,
    )
    if resolved is None:
        raise DealNotFound(deal_id or contact_id or contact_phone or "(no identifier)")

    event = AutomationEvent(deal_id=resolved, trigger_type=ON_WEBHOOK, custom_data=dict(custom_data or {}))
    async with deal_lock(resolved):
        deal = await repo.get_deal(resolved)
        if deal is None:
            raise DealNotFound(resolved)
        async with _http_client(http) as client:
            dispatcher = _dispatcher(repo, client, strict, max_hops, classify)
            outcomes = await dispatcher.run_rule(rule, deal, event)

    result = DispatchResult(
        deal_id=resolved,
        funnel_id=rule.funnel_id,
        trigger_kinds=[ON_WEBHOOK],
        results=outcomes,
    )
    log_dispatch_run(
        source="webhook",
        deal_id=resolved,
        funnel_id=rule.funnel_id,
        trigger_kinds=result.trigger_kinds,
        results=outcomes,
        event=event.to_dict(),
    )
    return result
