"""
Automation matching: narrow the funnel's candidate rules to the ones that fire.
"""
from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from typing import Optional, cast

from app.engine.configs import (
    CustomFieldTriggerConfig,
    KeywordTriggerConfig,
    TagTriggerConfig,
    parse_trigger_config,
)
from app.engine.errors import ConfigValidationError
from app.engine.models import AutomationRule
from app.engine.stages import (
    MESSAGE_TRIGGERS,
    ON_CUSTOM_FIELD_CHANGED,
    ON_FUNNEL_ENTER,
    ON_KEYWORD_RECEIVED,
    ON_TAG_ADDED,
    ON_TAG_REMOVED,
)
from app.engine.triggers import AutomationEvent

logger = logging.getLogger(__name__)


def _scope_skip_reason(
    rule: AutomationRule,
    event: AutomationEvent,
    current_stage_id: Optional[str],
) -> Optional[str]:
    if not rule.stage_id or rule.trigger_type == ON_FUNNEL_ENTER:
        return None

    if rule.trigger_type in MESSAGE_TRIGGERS:
        if rule.stage_id != current_stage_id:
            return f"deal not in stage {rule.stage_id} (current: {current_stage_id})"
        return None

    if rule.stage_id not in (event.to_stage_id, event.from_stage_id):
        return (
            f"stage mismatch (expected: {rule.stage_id}, "
            f"got to: {event.to_stage_id}, from: {event.from_stage_id})"
        )
    return None


def _condition_skip_reason(rule: AutomationRule, event: AutomationEvent) -> Optional[str]:
    try:
        config = parse_trigger_config(rule.trigger_type, rule.trigger_config)
    except ConfigValidationError as e:
        return str(e)

    if rule.trigger_type == ON_KEYWORD_RECEIVED:
        keywords = cast(KeywordTriggerConfig, config).keyword_list()
        message = (event.message_text or "").lower()
        if not any(keyword in message for keyword in keywords):
            return "no keyword match"

    elif rule.trigger_type in (ON_TAG_ADDED, ON_TAG_REMOVED):
        tag_name = cast(TagTriggerConfig, config).tag_name
        if (event.tag_name or "").lower() != tag_name.lower():
            return "tag mismatch"

    elif rule.trigger_type == ON_CUSTOM_FIELD_CHANGED:
        if event.field_key != cast(CustomFieldTriggerConfig, config).field_key:
            return "field mismatch"

    return None


def skip_reason(
    rule: AutomationRule,
    event: AutomationEvent,
    trigger_kinds: Iterable[str],
    current_stage_id: Optional[str] = None,
) -> Optional[str]:
    """Why `rule` does not fire for `event`, or None when it does."""
    if not rule.is_active:
        return "inactive"
    if rule.trigger_type not in set(trigger_kinds):
        return f"trigger {rule.trigger_type} not active"
    return _scope_skip_reason(rule, event, current_stage_id) or _condition_skip_reason(rule, event)


def match_rules(
    rules: Iterable[AutomationRule],
    event: AutomationEvent,
    trigger_kinds: Iterable[str],
    current_stage_id: Optional[str] = None,
) -> list[AutomationRule]:
    """All rules that fire, in input order. Every surviving rule runs."""
    kinds = set(trigger_kinds)
    matched: list[AutomationRule] = []
    for rule in rules:
        reason = skip_reason(rule, event, kinds, current_stage_id)
        if reason:
            logger.debug(json.dumps({
                "event": "automation_rule_skipped",
                "rule_id": rule.id,
                "deal_id": event.deal_id,
                "reason": reason,
            }))
            continue
        matched.append(rule)
    return matched
