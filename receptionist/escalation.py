"""Escalation detector: decides when a human should take the call.

Each trigger is independently sufficient:

  explicit_request   caller asks for a person
  profanity          hostile language
  repeated_confusion two or more consecutive confused caller turns
  model_handoff      inference flags handoff_needed
  out_of_scope       inference categorises the request as out of scope
  low_confidence     inference confidence below the threshold
  scheduling_error   the scheduling capability failed and cannot recover

Once escalated, a call stays escalated.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional

from receptionist.alerts import AlertSink
from receptionist.extractors.yes_no import normalize_answer
from receptionist.inference import InferenceResult
from receptionist.models import CallStage, CompactState, ConversationContext

log = logging.getLogger("receptionist.escalation")

HANDOFF_ACKNOWLEDGEMENT = (
    "I'll get one of our team to help you with that. Someone from reception "
    "will call you back shortly. Thanks for your patience."
)

_HUMAN_REQUEST = re.compile(
    r"\b(speak|talk|put me through|transfer me|connect me)\b.*\b(human|person|someone|somebody"
    r"|receptionist|reception|staff|manager|real person|operator)\b"
    r"|\b(real person|human being|operator)\b"
)
_PROFANITY = re.compile(r"\b(shit|damn|hell|fuck\w*|bloody|bugger|bullshit|crap)\b")
_CONFUSION = re.compile(
    r"^(what|huh|pardon|sorry|hello|hello hello|are you there)$"
    r"|\b(i dont understand|what do you mean|that doesnt make sense|youre not making sense"
    r"|i didnt get that|say that again|im confused)\b"
)


@dataclass
class EscalationDecision:
    reason: str
    category: Optional[str] = None


class EscalationDetector:
    """Evaluates the escalation triggers before and after inference."""

    def __init__(self, confidence_threshold: float = 0.5, confusion_limit: int = 2) -> None:
        self._confidence_threshold = confidence_threshold
        self._confusion_limit = confusion_limit

    def check_utterance(self, text: str, state: CompactState) -> Optional[EscalationDecision]:
        """Pre-inference triggers. Updates the confusion streak on ``state``."""
        normalized = normalize_answer(text)
        if _HUMAN_REQUEST.search(normalized):
            return EscalationDecision("explicit_request")
        if _PROFANITY.search(normalized):
            return EscalationDecision("profanity")

        if _CONFUSION.search(normalized):
            state.confusion_streak += 1
        else:
            state.confusion_streak = 0
        if state.confusion_streak >= self._confusion_limit:
            return EscalationDecision("repeated_confusion")
        return None

    def check_inference(self, result: InferenceResult) -> Optional[EscalationDecision]:
        """Post-inference triggers."""
        if result.handoff_category == "out_of_scope":
            return EscalationDecision("out_of_scope", result.handoff_category)
        if result.handoff_needed:
            return EscalationDecision("model_handoff", result.handoff_category)
        if result.confidence < self._confidence_threshold:
            return EscalationDecision("low_confidence", result.handoff_category)
        return None

    @staticmethod
    def scheduling_error(error: Exception) -> EscalationDecision:
        return EscalationDecision("scheduling_error", type(error).__name__)

    async def escalate(
        self,
        context: ConversationContext,
        decision: EscalationDecision,
        alerts: AlertSink,
    ) -> str:
        """Mark the call escalated, route it to a human, and return the reply."""
        state = context.current_state
        state.escalated = True
        state.handoff_reason = decision.reason
        state.call_stage = CallStage.ESCALATED
        log.warning(
            "Escalating call %s: %s (%s)", context.call_id, decision.reason, decision.category,
        )
        await alerts.route_handoff(context.call_id, decision.reason, decision.category)
        await alerts.create_alert(
            "handoff",
            {
                "call_id": context.call_id,
                "reason": decision.reason,
                "category": decision.category,
                "turn": state.turn_count,
            },
        )
        return HANDOFF_ACKNOWLEDGEMENT
