from datetime import datetime, timezone

import pytest

from app.engine.errors import StageTransitionError
from app.engine.stages import (
    DEFAULT_STAGES,
    ON_DEAL_LOST,
    ON_DEAL_WON,
    ON_STAGE_ENTER,
    ON_STAGE_EXIT,
    DealState,
    Stage,
    entry_trigger_kinds,
    transition,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
EARLIER = datetime(2024, 4, 1, 9, 0, tzinfo=timezone.utc)

NEW = Stage(id="s-new", funnel_id="f1", name="New")
WON = Stage(id="s-won", funnel_id="f1", name="Won", is_final=True, final_type="won")
LOST = Stage(id="s-lost", funnel_id="f1", name="Lost", is_final=True, final_type="lost")
OTHER = Stage(id="s-other", funnel_id="f2", name="Elsewhere")


def _state(stage: Stage, closed_at=None, close_reason_id=None) -> DealState:
    return DealState(
        funnel_id="f1",
        stage_id=stage.id,
        entered_stage_at=EARLIER,
        closed_at=closed_at,
        close_reason_id=close_reason_id,
    )


def test_move_into_won_closes_deal_and_emits_won():
    new_state, kinds = transition(_state(NEW), WON, now=NOW)

    assert new_state.stage_id == "s-won"
    assert new_state.closed_at == NOW
    assert new_state.entered_stage_at == NOW
    assert ON_STAGE_ENTER in kinds
    assert ON_DEAL_WON in kinds
    assert ON_STAGE_EXIT in kinds


def test_move_into_lost_keeps_close_reason():
    new_state, kinds = transition(_state(NEW), LOST, now=NOW, close_reason_id="reason-1")

    assert new_state.closed_at == NOW
    assert new_state.close_reason_id == "reason-1"
    assert ON_DEAL_LOST in kinds
    assert ON_DEAL_WON not in kinds


def test_reopening_clears_closed_at_and_reason():
    closed = _state(WON, closed_at=EARLIER, close_reason_id="reason-1")

    new_state, kinds = transition(closed, NEW, now=NOW)

    assert new_state.closed_at is None
    assert new_state.close_reason_id is None
    assert kinds == [ON_STAGE_EXIT, ON_STAGE_ENTER]


def test_close_reason_ignored_for_open_stage():
    new_state, _ = transition(_state(WON, closed_at=EARLIER), NEW, now=NOW, close_reason_id="reason-1")
    assert new_state.close_reason_id is None


def test_same_stage_is_not_a_transition():
    state = _state(NEW)

    new_state, kinds = transition(state, NEW, now=NOW)

    assert new_state is state
    assert kinds == []


def test_stage_from_another_funnel_is_rejected():
    with pytest.raises(StageTransitionError):
        transition(_state(NEW), OTHER, now=NOW)


@pytest.mark.parametrize("target", [NEW, WON, LOST])
def test_closed_at_set_iff_target_is_final(target):
    start = _state(LOST if target is not LOST else NEW, closed_at=EARLIER if target is not LOST else None)
    new_state, _ = transition(start, target, now=NOW)
    assert (new_state.closed_at is not None) == target.is_final


def test_entry_kinds():
    assert entry_trigger_kinds(NEW) == [ON_STAGE_ENTER]
    assert entry_trigger_kinds(WON) == [ON_STAGE_ENTER, ON_DEAL_WON]
    assert entry_trigger_kinds(LOST) == [ON_STAGE_ENTER, ON_DEAL_LOST]


def test_default_template_has_one_stage_per_polarity():
    finals = [s["final_type"] for s in DEFAULT_STAGES if s.get("is_final")]
    assert sorted(finals) == ["lost", "won"]
    assert [s["display_order"] for s in DEFAULT_STAGES] == list(range(6))
