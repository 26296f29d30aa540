"""
Tests for conversation state and the state store.
"""

import pytest

from crmpilot.context.conversation import (
    MAX_HISTORY,
    MAX_RECENT_TOPICS,
    PHASE_SUGGESTIONS,
    ActiveTopic,
    ConversationPhase,
    ConversationStateStore,
    is_cancellation,
    is_confirmation,
)


class TestPhases:

    def test_starts_in_exploration(self, manager):
        assert manager.phase == ConversationPhase.EXPLORATION
        assert manager.state.suggestions == PHASE_SUGGESTIONS[ConversationPhase.EXPLORATION]

    @pytest.mark.parametrize("event,phase", [
        ("create_chart", ConversationPhase.ANALYSIS),
        ("chart_modified", ConversationPhase.MODIFICATION),
        ("analyze_data", ConversationPhase.INSIGHTS),
        ("export_requested", ConversationPhase.EXPORT),
    ])
    def test_transition_table(self, manager, event, phase):
        assert manager.transition(event)
        assert manager.phase == phase
        assert manager.state.phase.previous == ConversationPhase.EXPLORATION

    def test_unknown_event_keeps_phase(self, manager):
        manager.transition("create_chart")
        assert not manager.transition("send_email")
        assert manager.phase == ConversationPhase.ANALYSIS

    def test_transitions_are_recorded(self, manager):
        manager.transition("create_chart")
        manager.transition("export_data")
        manager.transition("new_request")
        assert manager.state.phase.transitions == [
            "exploration->analysis",
            "analysis->export",
            "export->exploration",
        ]

    def test_update_refreshes_suggestions(self, manager):
        manager.update("export my chart", "export_data")
        assert manager.state.last_action == "export_data"
        assert manager.state.suggestions == PHASE_SUGGESTIONS[ConversationPhase.EXPORT]


class TestTopics:

    def test_recent_topics_are_bounded_and_newest_first(self, manager):
        manager.update("show deals by stage")
        manager.update("pie chart of contacts by industry")
        topics = manager.state.memory.recent_topics
        assert len(topics) == MAX_RECENT_TOPICS
        assert topics == ["contacts", "pie", "chart", "industry", "deals"]

    def test_active_topic_moves_to_analysis(self, manager):
        manager.set_active_topic(ActiveTopic(data_type="deals", dimension="stage", chart_type="pie"))
        assert manager.phase == ConversationPhase.ANALYSIS
        assert manager.state.current_topic == "deals by stage"
        assert manager.state.memory.preferences.preferred_chart_type == "pie"

    @pytest.mark.parametrize("message,expected", [
        ("make it a line chart", True),
        ("change the chart colors", True),
        ("what about deal stage numbers", True),
        ("show me my contacts", False),
    ])
    def test_referring_to_active_topic(self, manager, message, expected):
        manager.set_active_topic(ActiveTopic(data_type="deals", dimension="stage"))
        assert manager.is_referring_to_active_topic(message) is expected

    def test_no_topic_means_no_reference(self, manager):
        assert not manager.is_referring_to_active_topic("make it a pie chart")

    def test_history_is_bounded(self, manager):
        for i in range(MAX_HISTORY + 5):
            manager.add_to_history("user", f"message {i}")
        history = manager.state.memory.session_history
        assert len(history) == MAX_HISTORY
        assert history[-1].content == f"message {MAX_HISTORY + 4}"


class TestShortReplies:

    @pytest.mark.parametrize("message", ["yes", "Yes.", "ok do it", "go ahead", "sure thing"])
    def test_confirmations(self, message):
        assert is_confirmation(message)
        assert not is_cancellation(message)

    @pytest.mark.parametrize("message", ["no", "Nope!", "cancel that", "never mind"])
    def test_cancellations(self, message):
        assert is_cancellation(message)
        assert not is_confirmation(message)

    @pytest.mark.parametrize("message", ["", "yes but first show me every deal we have", "show deals"])
    def test_neither(self, message):
        assert not is_confirmation(message)
        assert not is_cancellation(message)


class TestSummary:

    def test_summary_lists_state(self, manager):
        manager.set_active_topic(ActiveTopic(data_type="deals", dimension="stage", chart_type="bar"))
        manager.update("show deals by stage", "create_chart")
        manager.add_to_history("user", "show deals by stage")
        manager.set_pending_action("update_deal", {"dealName": "Acme Renewal"}, "update deal Acme Renewal")

        summary = manager.summary()
        assert "Conversation phase: analysis" in summary
        assert "Active topic: deals by stage (bar chart)" in summary
        assert "Last action: create_chart" in summary
        assert "PENDING CONFIRMATION: update_deal update deal Acme Renewal" in summary
        assert "user: show deals by stage" in summary

    def test_snapshot_keys(self, manager):
        snapshot = manager.context_snapshot()
        assert snapshot["userId"] == "u1"
        assert snapshot["sessionId"] == "default"
        assert snapshot["phase"] == "exploration"


class TestStore:

    def test_get_creates_and_reuses(self):
        store = ConversationStateStore()
        first = store.get("u1", "s1")
        first.update("hello", "create_chart")
        again = store.get("u1", "s1")
        assert again.state is first.state
        assert ("u1", "s1") in store

    def test_sessions_are_isolated(self):
        store = ConversationStateStore()
        store.get("u1", "s1").set_pending_action("send_email", {})
        assert store.get("u1", "s2").state.pending_action is None
        assert store.get("u2", "s1").state.pending_action is None

    def test_reset_scopes(self):
        store = ConversationStateStore()
        for user, session in [("u1", "a"), ("u1", "b"), ("u2", "a")]:
            store.get(user, session)

        assert store.reset("u1", "a") == 1
        assert ("u1", "b") in store
        assert store.reset("u1") == 1
        assert len(store) == 1
        assert store.reset() == 1
        assert len(store) == 0

    def test_pending_flows_clear(self, manager):
        manager.set_pending_action("send_email", {"contactName": "Maria Lopez"}, "email Maria Lopez")
        pending = manager.clear_pending_action()
        assert pending.summary == "email Maria Lopez"
        assert manager.state.pending_action is None
        assert manager.clear_pending_clarification() is None
