"""Tests for m2c.stage_controller — loop state merges, cards, detail surface."""

import pytest

from m2c.event_bus import Events, StageAction
from m2c.stage_controller import NoDetail, StageController, ViewingDetail


@pytest.fixture
def controller(mock_config, store, bus, actions):
    return StageController(store, bus, actions)


class TestUpdateLoopState:
    def test_merges_in_one_commit(self, controller, store):
        commits = []
        store.subscribe("*", lambda new, old, path: commits.append(new))

        controller.update_loop_state({
            "meeting_name": "Kickoff",
            "active_stage": "meet",
            "stages": {"meet": {"status": "active", "start_time": 10.0, "metrics": {"primary": "Extracting..."}}},
        })

        assert len(commits) == 1
        assert store.get("meeting.name") == "Kickoff"
        assert store.get("activeStage") == "meet"
        assert store.get("stages.meet.status") == "active"
        assert store.get("stages.meet.startTime") == 10.0

    def test_metrics_merge_key_by_key(self, controller, store):
        controller.update_loop_state({"stages": {"build": {"metrics": {"primary": "3 dispatched"}}}})
        controller.update_loop_state({"stages": {"build": {"metrics": {"statusText": "Running"}}}})
        assert store.get("stages.build.metrics") == {"primary": "3 dispatched", "statusText": "Running"}

    def test_unknown_stage_ignored(self, controller, store):
        controller.update_loop_state({"stages": {"deploy": {"status": "active"}}})
        assert "deploy" not in store.get("stages")

    def test_single_active_stage(self, controller, store, capsys):
        controller.update_loop_state({"stages": {"meet": {"status": "active"}}})
        controller.update_loop_state({"stages": {"analyze": {"status": "active"}}})

        assert store.get("stages.meet.status") == "waiting"
        assert store.get("stages.analyze.status") == "active"
        assert store.get("activeStage") == "analyze"
        assert "was still active" in capsys.readouterr().err

    def test_cards_rendered_from_committed_state(self, controller, store):
        drawn = []
        controller.add_renderer(drawn.append)
        controller.update_loop_state({"stages": {"verify": {"status": "waiting", "metrics": {"primary": "Ship"}}}})

        cards = drawn[-1]
        assert [c.stage for c in cards] == ["meet", "analyze", "build", "verify"]
        verify = cards[3]
        assert verify.status == "waiting"
        assert verify.primary == "Ship"
        assert verify.status_text == "Waiting..."
        assert cards[0].primary == "—"

    def test_active_stage_cleared_when_stage_finishes(self, controller, store):
        controller.update_loop_state({"active_stage": "build", "stages": {"build": {"status": "active"}}})
        assert controller.cards[2].is_active

        controller.update_loop_state({"stages": {"build": {"status": "complete"}}})

        assert store.get("activeStage") is None
        assert not any(card.is_active for card in controller.cards)

    def test_active_stage_needs_an_active_record(self, controller, store):
        controller.update_loop_state({"active_stage": "build", "stages": {"build": {"status": "waiting"}}})
        assert store.get("activeStage") is None

    def test_iteration(self, controller, store):
        controller.update_loop_state({"iteration": 2})
        assert store.get("meeting.iteration") == 2


class TestAdvanceStage:
    def test_marks_from_complete_and_to_active(self, controller, store, bus):
        transitions = []
        bus.on(Events.STAGE_TRANSITION, transitions.append)
        controller.update_loop_state({"stages": {"meet": {"status": "active"}}})

        controller.advance_stage("meet", "analyze")

        assert store.get("stages.meet.status") == "complete"
        assert store.get("stages.analyze.status") == "active"
        assert store.get("activeStage") == "analyze"
        assert transitions == [{"from": "meet", "to": "analyze"}]


class TestStageActionsOnCards:
    def test_actions_only_when_waiting(self, controller, actions):
        action = StageAction("go", "Go", lambda: None)
        actions.register("build", lambda record: [action])

        cards = controller.render_loop_nodes()
        assert cards[2].actions == []

        controller.update_loop_state({"stages": {"build": {"status": "waiting"}}})
        assert controller.cards[2].actions == [action]


class TestDetailSurface:
    def test_idle_stage_rejected(self, controller, toasts):
        assert controller.open_stage_detail("build") is False
        assert isinstance(controller.detail, NoDetail)
        assert toasts == [{"message": "This stage hasn't started yet", "level": "info"}]

    def test_open_sets_view_and_store(self, controller, store, bus):
        opened = []
        bus.on(Events.STAGE_DETAIL_OPENED, opened.append)
        controller.update_loop_state({"stages": {"build": {"status": "waiting"}}})

        assert controller.open_stage_detail("build") is True
        assert controller.detail == ViewingDetail("build")
        assert controller.detail.panel_id == "panel-issues"
        assert store.get("detailPanelOpen") == "build"
        assert opened == [{"stage": "build", "panelId": "panel-issues"}]
        assert controller.cards[2].is_selected

    def test_opening_another_replaces_previous(self, controller, store, bus):
        closed = []
        bus.on(Events.STAGE_DETAIL_CLOSED, closed.append)
        controller.update_loop_state({"stages": {"meet": {"status": "complete"}, "analyze": {"status": "waiting"}}})
        controller.open_stage_detail("meet")
        controller.open_stage_detail("analyze")
        assert closed == [{"stage": "meet"}]
        assert controller.detail == ViewingDetail("analyze")
        assert controller.detail.panel_id == "panel-loading"
        assert store.get("detailPanelOpen") == "analyze"

    def test_close_is_idempotent(self, controller, store, bus):
        closed = []
        bus.on(Events.STAGE_DETAIL_CLOSED, closed.append)
        controller.update_loop_state({"stages": {"verify": {"status": "error"}}})
        controller.open_stage_detail("verify")

        controller.close_stage_detail()
        controller.close_stage_detail()

        assert isinstance(controller.detail, NoDetail)
        assert store.get("detailPanelOpen") is None
        assert closed == [{"stage": "verify"}]

    def test_cancel_closes(self, controller):
        controller.update_loop_state({"stages": {"meet": {"status": "active"}}})
        controller.open_stage_detail("meet")
        controller.cancel()
        assert isinstance(controller.detail, NoDetail)


class TestStatusAndFeed:
    def test_append_log_feeds_activity_and_bus(self, controller, bus):
        logs = []
        bus.on(Events.LOG_MESSAGE, logs.append)
        controller.append_log("issueLogEntries", "Issue #4 created")
        assert logs == [{"channel": "issueLogEntries", "message": "Issue #4 created"}]
        assert controller.activity_feed[-1][1] == "Issue #4 created"

    def test_activity_feed_capped(self, controller, mock_config):
        for i in range(mock_config["activity_feed_limit"] + 5):
            controller.append_log("agentLogEntries", f"line {i}")
        assert len(controller.activity_feed) == mock_config["activity_feed_limit"]
        assert controller.activity_feed[0][1] == "line 5"

    def test_set_status_emits(self, controller, bus):
        changes = []
        bus.on(Events.STATUS_CHANGED, changes.append)
        controller.set_status("Analyzing...", "processing")
        assert controller.status == ("Analyzing...", "processing")
        assert changes == [{"text": "Analyzing...", "kind": "processing"}]

    def test_unknown_agent_ignored(self, controller):
        controller.set_active_agent("analyzer")
        controller.set_active_agent("nobody")
        assert controller.active_agent == "analyzer"

    def test_qa_steps_map_to_phases(self, controller):
        controller.set_qa_step("deploy")
        assert controller.active_phase == "verify"
        controller.set_qa_step("complete")
        assert "verify" in controller.completed_phases

    def test_reset(self, controller):
        controller.set_status("Error", "error")
        controller.append_log("x", "y")
        controller.reset()
        assert controller.status == ("Ready", "")
        assert len(controller.activity_feed) == 0
        assert controller.active_phase == "meeting"
