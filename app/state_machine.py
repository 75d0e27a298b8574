"""
STATE MACHINE - Forward-only engagement stages and the objective ladder

Stage Flow (never backwards):
    CONFUSED -> SUSPICIOUS -> ASSERTIVE

Transitions look at the last 3 non-empty adversary messages:
- urgencyRepeat    : >= 2 of 3 carry urgency wording
- sameDemandRepeat : >= 2 of 3 fall in the same demand bucket (otp / link / account)
- pushyRepeat      : >= 2 of 3 carry any demand bucket

CONFUSED   -> SUSPICIOUS when turnCount >= 2 and (urgencyRepeat or sameDemandRepeat)
SUSPICIOUS -> ASSERTIVE  when turnCount >= 4 and (sameDemandRepeat or pushyRepeat)

The ladder is the fixed order of information-gathering objectives pursued
one per reply.
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional, Sequence

from .intelligence_extractor import IntelligenceRecord, normalize_text

logger = logging.getLogger(__name__)


class EngagementStage(str, Enum):
    CONFUSED = "CONFUSED"
    SUSPICIOUS = "SUSPICIOUS"
    ASSERTIVE = "ASSERTIVE"

    @property
    def rank(self) -> int:
        return STAGE_ORDER.index(self)


STAGE_ORDER = [EngagementStage.CONFUSED, EngagementStage.SUSPICIOUS, EngagementStage.ASSERTIVE]


class SessionMode(str, Enum):
    SAFE = "SAFE"
    SUSPECT = "SUSPECT"
    SCAM_CONFIRMED = "SCAM_CONFIRMED"
    COMPLETE = "COMPLETE"


URGENCY_PATTERN = re.compile(r"urgent|immediately|blocked|suspended|verify|now|asap")

DEMAND_BUCKETS = {
    "otp": re.compile(r"otp|pin|password|cvv"),
    "link": re.compile(r"link|click|upi|payment|pay|collect"),
    "account": re.compile(r"account|card|bank|ifsc|beneficiary|upi id"),
}


@dataclass(frozen=True)
class EngagementSignals:
    urgencyRepeat: bool = False
    sameDemandRepeat: bool = False
    pushyRepeat: bool = False


def classify_demand(normalized_text: str) -> List[str]:
    return [name for name, pattern in DEMAND_BUCKETS.items() if pattern.search(normalized_text)]


def detect_engagement_signals(messages: Sequence[str]) -> EngagementSignals:
    """Signals over the last 3 non-empty adversary messages."""
    window = [normalize_text(m) for m in messages if m and m.strip()][-3:]
    urgent = sum(1 for text in window if URGENCY_PATTERN.search(text))
    demands = [classify_demand(text) for text in window]

    bucket_counts: Dict[str, int] = {}
    for buckets in demands:
        for bucket in buckets:
            bucket_counts[bucket] = bucket_counts.get(bucket, 0) + 1

    return EngagementSignals(
        urgencyRepeat=urgent >= 2,
        sameDemandRepeat=any(count >= 2 for count in bucket_counts.values()),
        pushyRepeat=sum(1 for buckets in demands if buckets) >= 2,
    )


def plan(signals: EngagementSignals, current: EngagementStage, turn_count: int) -> EngagementStage:
    """Next stage; moves at most one step forward, never back."""
    if current == EngagementStage.CONFUSED:
        if turn_count >= 2 and (signals.urgencyRepeat or signals.sameDemandRepeat):
            return EngagementStage.SUSPICIOUS
    elif current == EngagementStage.SUSPICIOUS:
        if turn_count >= 4 and (signals.sameDemandRepeat or signals.pushyRepeat):
            return EngagementStage.ASSERTIVE
    return current


def advance_stage(messages: Sequence[str], current: EngagementStage, turn_count: int,
                  session_id: str = "") -> EngagementStage:
    new_stage = plan(detect_engagement_signals(messages), current, turn_count)
    if new_stage != current:
        logger.info(f"[{session_id}] Stage: {current.value} -> {new_stage.value} (turn {turn_count})")
    return new_stage


# ==============================================================================
# OBJECTIVE LADDER
# ==============================================================================

ASK_CASE_ID = "ask_case_id"
ASK_DESIGNATION_BRANCH = "ask_designation_branch"
ASK_CALLBACK_NUMBER = "ask_callback_number"
ASK_TRANSACTION_DETAILS = "ask_transaction_details"
ASK_DEVICE_LOCATION = "ask_device_location"
ASK_SENDER_ID = "ask_sender_id"
ASK_LINK_OR_HANDLE = "ask_link_or_handle"
ASK_SECURE_PROCESS = "ask_secure_process"

LADDER = [
    ASK_CASE_ID,
    ASK_DESIGNATION_BRANCH,
    ASK_CALLBACK_NUMBER,
    ASK_TRANSACTION_DETAILS,
    ASK_DEVICE_LOCATION,
    ASK_SENDER_ID,
    ASK_LINK_OR_HANDLE,
    ASK_SECURE_PROCESS,
]

TERMINAL_INTENT = ASK_SECURE_PROCESS

LADDER_QUESTIONS = {
    ASK_CASE_ID: "Do you have a ticket or case ID?",
    ASK_DESIGNATION_BRANCH: "What is your designation and which branch is this?",
    ASK_CALLBACK_NUMBER: "What's the official callback or toll-free number?",
    ASK_TRANSACTION_DETAILS: "What transaction amount and time is this about?",
    ASK_DEVICE_LOCATION: "Which device and city was this login from?",
    ASK_SENDER_ID: "What's the official SMS sender ID or email domain?",
    ASK_SECURE_PROCESS: "How does the secure process work on your side?",
}

LINK_QUESTION = "Why is a link needed for this?"
HANDLE_QUESTION = "What's the UPI ID or beneficiary name?"

# Known-value slot that makes an objective redundant once filled
INTENT_FACT_SLOT = {
    ASK_CASE_ID: "case_id",
    ASK_DESIGNATION_BRANCH: "branch",
    ASK_CALLBACK_NUMBER: "callback_number",
    ASK_TRANSACTION_DETAILS: "transaction_amount",
    ASK_SENDER_ID: "sender_id",
}

PAYMENT_CONTEXT = re.compile(r"link|http|upi|payment|pay\b|collect")


def payment_context(last_message: str, has_link: bool, has_upi: bool) -> bool:
    """True when the adversary or known facts already brought up a link/payment."""
    return has_link or has_upi or bool(PAYMENT_CONTEXT.search(normalize_text(last_message)))


def question_for(intent: str, intel: Optional[IntelligenceRecord] = None) -> str:
    if intent == ASK_LINK_OR_HANDLE:
        if intel is not None and intel.phishing_links:
            return HANDLE_QUESTION
        return LINK_QUESTION
    return LADDER_QUESTIONS.get(intent, LADDER_QUESTIONS[TERMINAL_INTENT])


def next_intent(asked, last_intents: Sequence[str], intel: IntelligenceRecord,
                known: Dict[str, Optional[str]], last_message: str,
                has_link: bool = False, has_upi: bool = False) -> str:
    """First ladder objective not yet asked, not used in the last 3 turns and still useful."""
    recent = list(last_intents)[-3:]
    for intent in LADDER:
        if intent == TERMINAL_INTENT:
            break
        if intent in asked or intent in recent:
            continue
        slot = INTENT_FACT_SLOT.get(intent)
        if slot and known.get(slot):
            continue
        if intent == ASK_CALLBACK_NUMBER and intel.phone_numbers:
            continue
        if intent == ASK_LINK_OR_HANDLE:
            if intel.phishing_links and intel.upi_ids:
                continue
            if not payment_context(last_message, has_link, has_upi):
                continue
        return intent
    return TERMINAL_INTENT


def normalize_intent(tag: str) -> Optional[str]:
    """Map a free-text objective tag onto a ladder intent."""
    if not tag:
        return None
    lower = tag.strip().lower()
    if lower in LADDER:
        return lower
    if any(k in lower for k in ("ticket", "case", "ref")):
        return ASK_CASE_ID
    if any(k in lower for k in ("branch", "designation", "city", "department")):
        return ASK_DESIGNATION_BRANCH
    if any(k in lower for k in ("callback", "toll", "helpline", "phone")):
        return ASK_CALLBACK_NUMBER
    if any(k in lower for k in ("transaction", "amount", "merchant")):
        return ASK_TRANSACTION_DETAILS
    if any(k in lower for k in ("device", "location", "login")):
        return ASK_DEVICE_LOCATION
    if any(k in lower for k in ("sender", "email", "sms")):
        return ASK_SENDER_ID
    if any(k in lower for k in ("link", "upi", "beneficiary", "handle")):
        return ASK_LINK_OR_HANDLE
    if any(k in lower for k in ("process", "secure", "procedure")):
        return ASK_SECURE_PROCESS
    return None


def decide_mode(scam_detected: bool, scam_score: float, total_messages: int,
                max_turns: int, suspect_threshold: float) -> SessionMode:
    if scam_detected:
        if total_messages >= max_turns:
            return SessionMode.COMPLETE
        return SessionMode.SCAM_CONFIRMED
    if scam_score >= suspect_threshold:
        return SessionMode.SUSPECT
    return SessionMode.SAFE


def agent_notes(mode: SessionMode, scam_score: float, stress_score: float, intent: str,
                turns: int, stage: EngagementStage) -> str:
    return (
        f"mode={mode.value}, scamScore={scam_score:.2f}, stressScore={stress_score:.2f}, "
        f"intent={intent}, turns={turns}, stage={stage.value}"
    )
