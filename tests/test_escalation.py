"""Tests for EscalationDetector."""

import os
import sys

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from receptionist.escalation import HANDOFF_ACKNOWLEDGEMENT, EscalationDetector
from receptionist.inference import InferenceResult
from receptionist.models import CallStage, CompactState, ConversationContext


class TestUtteranceTriggers:
    @pytest.mark.parametrize(
        "text",
        ["Can I speak to a real person?", "put me through to reception please", "operator"],
    )
    def test_explicit_request(self, text):
        decision = EscalationDetector().check_utterance(text, CompactState())
        assert decision.reason == "explicit_request"

    def test_profanity(self):
        decision = EscalationDetector().check_utterance("this is bloody useless", CompactState())
        assert decision.reason == "profanity"

    def test_single_confusion_tolerated(self):
        state = CompactState()
        assert EscalationDetector().check_utterance("What?", state) is None
        assert state.confusion_streak == 1

    def test_repeated_confusion(self):
        detector = EscalationDetector()
        state = CompactState()
        detector.check_utterance("Sorry?", state)
        decision = detector.check_utterance("I don't understand", state)
        assert decision.reason == "repeated_confusion"

    def test_confusion_streak_resets(self):
        detector = EscalationDetector()
        state = CompactState()
        detector.check_utterance("huh", state)
        detector.check_utterance("tomorrow morning please", state)
        assert state.confusion_streak == 0
        assert detector.check_utterance("pardon", state) is None

    def test_ordinary_utterance(self):
        assert EscalationDetector().check_utterance("I'd like to book in", CompactState()) is None


class TestInferenceTriggers:
    def test_out_of_scope(self):
        result = InferenceResult(reply="", handoff_category="out_of_scope")
        assert EscalationDetector().check_inference(result).reason == "out_of_scope"

    def test_model_handoff(self):
        result = InferenceResult(reply="", handoff_needed=True, handoff_category="clinical")
        decision = EscalationDetector().check_inference(result)
        assert (decision.reason, decision.category) == ("model_handoff", "clinical")

    def test_low_confidence(self):
        result = InferenceResult(reply="Hmm", confidence=0.2)
        assert EscalationDetector(confidence_threshold=0.5).check_inference(result).reason == "low_confidence"

    def test_confident_result_passes(self):
        assert EscalationDetector().check_inference(InferenceResult(reply="Sure", confidence=0.9)) is None


class TestEscalate:
    @pytest.mark.asyncio
    async def test_marks_state_and_routes(self, tenant, alerts):
        context = ConversationContext(call_id="CA-esc", caller_id="+61400111222", tenant_info=tenant)
        detector = EscalationDetector()

        reply = await detector.escalate(context, detector.scheduling_error(TimeoutError()), alerts)

        assert reply == HANDOFF_ACKNOWLEDGEMENT
        state = context.current_state
        assert state.escalated is True
        assert state.handoff_reason == "scheduling_error"
        assert state.call_stage == CallStage.ESCALATED
        assert alerts.handoffs[0].call_id == "CA-esc"
        assert alerts.handoffs[0].category == "TimeoutError"
        assert alerts.alerts[0].reason == "handoff"
