from app.engine import configs as cfg
from app.engine.matcher import match_rules, skip_reason
from app.engine.models import AutomationRule
from app.engine.stages import (
    ON_CUSTOM_FIELD_CHANGED,
    ON_DEAL_WON,
    ON_FUNNEL_ENTER,
    ON_KEYWORD_RECEIVED,
    ON_MESSAGE_RECEIVED,
    ON_STAGE_ENTER,
    ON_STAGE_EXIT,
    ON_TAG_ADDED,
    Stage,
)
from app.engine.triggers import AutomationEvent, resolve_trigger_kinds

WON = Stage(id="s-won", funnel_id="f1", name="Won", is_final=True, final_type="won")
MID = Stage(id="s-mid", funnel_id="f1", name="Mid")


def _rule(trigger_type, *, stage_id=None, trigger_config=None, is_active=True, rule_id="r1"):
    return AutomationRule(
        id=rule_id,
        funnel_id="f1",
        name=rule_id,
        trigger_type=trigger_type,
        action_type=cfg.ADD_NOTE,
        stage_id=stage_id,
        is_active=is_active,
        trigger_config=trigger_config or {},
    )


# ---------------------------------------------------------------------------
# Trigger resolution
# ---------------------------------------------------------------------------

def test_move_into_won_stage_yields_enter_and_won():
    event = AutomationEvent(deal_id="d1", from_stage_id="s-new", to_stage_id=WON.id)
    kinds = set(resolve_trigger_kinds(event, WON))
    assert {ON_STAGE_ENTER, ON_DEAL_WON, ON_STAGE_EXIT} <= kinds


def test_explicit_trigger_type_only():
    event = AutomationEvent(deal_id="d1", trigger_type=ON_TAG_ADDED, tag_name="vip")
    assert resolve_trigger_kinds(event) == [ON_TAG_ADDED]


def test_new_deal_adds_funnel_enter():
    assert resolve_trigger_kinds(AutomationEvent(deal_id="d1", is_new_deal=True)) == [ON_FUNNEL_ENTER]


def test_empty_event_has_no_kinds():
    assert resolve_trigger_kinds(AutomationEvent(deal_id="d1")) == []


# ---------------------------------------------------------------------------
# Matching
# ---------------------------------------------------------------------------

def test_stage_scoped_rule_never_fires_for_unrelated_stages():
    rule = _rule(ON_STAGE_ENTER, stage_id="s-x")
    event = AutomationEvent(deal_id="d1", from_stage_id="s-a", to_stage_id="s-b")
    kinds = [ON_STAGE_ENTER, ON_STAGE_EXIT]

    assert match_rules([rule], event, kinds, current_stage_id="s-b") == []
    assert "stage mismatch" in skip_reason(rule, event, kinds, "s-b")


def test_stage_scope_matches_from_or_to():
    enter = _rule(ON_STAGE_ENTER, stage_id="s-b", rule_id="enter")
    exit_ = _rule(ON_STAGE_EXIT, stage_id="s-a", rule_id="exit")
    event = AutomationEvent(deal_id="d1", from_stage_id="s-a", to_stage_id="s-b")

    matched = match_rules([enter, exit_], event, [ON_STAGE_ENTER, ON_STAGE_EXIT], "s-b")

    assert [r.id for r in matched] == ["enter", "exit"]


def test_unscoped_rule_fires_on_any_stage():
    rule = _rule(ON_STAGE_ENTER)
    event = AutomationEvent(deal_id="d1", to_stage_id="s-b")
    assert match_rules([rule], event, [ON_STAGE_ENTER], "s-b") == [rule]


def test_inactive_and_inactive_kind_are_skipped():
    event = AutomationEvent(deal_id="d1", to_stage_id="s-b")
    assert skip_reason(_rule(ON_STAGE_ENTER, is_active=False), event, [ON_STAGE_ENTER]) == "inactive"
    assert "not active" in skip_reason(_rule(ON_DEAL_WON), event, [ON_STAGE_ENTER])


def test_funnel_enter_ignores_stage_scope():
    rule = _rule(ON_FUNNEL_ENTER, stage_id="s-other")
    event = AutomationEvent(deal_id="d1", is_new_deal=True)
    assert match_rules([rule], event, [ON_FUNNEL_ENTER], "s-first") == [rule]


def test_message_trigger_scoped_to_current_stage():
    rule = _rule(ON_MESSAGE_RECEIVED, stage_id=MID.id)
    event = AutomationEvent(deal_id="d1", trigger_type=ON_MESSAGE_RECEIVED, message_text="oi")

    assert match_rules([rule], event, [ON_MESSAGE_RECEIVED], current_stage_id=MID.id) == [rule]
    assert match_rules([rule], event, [ON_MESSAGE_RECEIVED], current_stage_id="s-elsewhere") == []


def test_keyword_match_is_case_insensitive_substring():
    rule = _rule(ON_KEYWORD_RECEIVED, trigger_config={"keywords": "Preço, orçamento"})
    kinds = [ON_KEYWORD_RECEIVED]

    hit = AutomationEvent(deal_id="d1", trigger_type=ON_KEYWORD_RECEIVED, message_text="Qual o PREÇO do plano?")
    miss = AutomationEvent(deal_id="d1", trigger_type=ON_KEYWORD_RECEIVED, message_text="bom dia")

    assert match_rules([rule], hit, kinds) == [rule]
    assert skip_reason(rule, miss, kinds) == "no keyword match"


def test_keyword_list_config():
    rule = _rule(ON_KEYWORD_RECEIVED, trigger_config={"keywords": ["demo", "teste"]})
    event = AutomationEvent(deal_id="d1", trigger_type=ON_KEYWORD_RECEIVED, message_text="quero uma demo")
    assert match_rules([rule], event, [ON_KEYWORD_RECEIVED]) == [rule]


def test_tag_condition_compares_lowercased():
    rule = _rule(ON_TAG_ADDED, trigger_config={"tag_name": "VIP"})
    kinds = [ON_TAG_ADDED]

    assert match_rules([rule], AutomationEvent(deal_id="d1", trigger_type=ON_TAG_ADDED, tag_name="vip"), kinds) == [rule]
    assert skip_reason(rule, AutomationEvent(deal_id="d1", trigger_type=ON_TAG_ADDED, tag_name="lead"), kinds) == "tag mismatch"


def test_custom_field_condition():
    rule = _rule(ON_CUSTOM_FIELD_CHANGED, trigger_config={"field_key": "plano"})
    kinds = [ON_CUSTOM_FIELD_CHANGED]

    hit = AutomationEvent(deal_id="d1", trigger_type=ON_CUSTOM_FIELD_CHANGED, field_key="plano", field_value="pro")
    miss = AutomationEvent(deal_id="d1", trigger_type=ON_CUSTOM_FIELD_CHANGED, field_key="cidade")

    assert match_rules([rule], hit, kinds) == [rule]
    assert skip_reason(rule, miss, kinds) == "field mismatch"


def test_unknown_trigger_type_is_skipped_not_raised():
    rule = _rule("on_something_new")
    event = AutomationEvent(deal_id="d1", trigger_type="on_something_new")
    assert "Unknown trigger type" in skip_reason(rule, event, ["on_something_new"])


def test_stored_rule_without_tag_name_never_fires():
    rule = _rule(ON_TAG_ADDED, trigger_config={"tag_name": ""})
    tagless = AutomationEvent(deal_id="d1", trigger_type=ON_TAG_ADDED)

    assert match_rules([rule], tagless, [ON_TAG_ADDED]) == []
    assert "Invalid on_tag_added config" in skip_reason(rule, tagless, [ON_TAG_ADDED])
