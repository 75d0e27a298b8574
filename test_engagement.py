"""
ENGAGEMENT STAGE & OBJECTIVE LADDER TESTS
Forward-only stage transitions, objective selection, modes and notes.
"""

from app.intelligence_extractor import IntelligenceRecord, extract
from app.state_machine import (
    ASK_CALLBACK_NUMBER,
    ASK_CASE_ID,
    ASK_DESIGNATION_BRANCH,
    ASK_DEVICE_LOCATION,
    ASK_LINK_OR_HANDLE,
    ASK_SECURE_PROCESS,
    ASK_SENDER_ID,
    ASK_TRANSACTION_DETAILS,
    HANDLE_QUESTION,
    LINK_QUESTION,
    EngagementSignals,
    EngagementStage,
    SessionMode,
    advance_stage,
    agent_notes,
    decide_mode,
    detect_engagement_signals,
    next_intent,
    normalize_intent,
    plan,
    question_for,
)
from app.tagged_set import TaggedSet

PUSHY_OTP_MESSAGES = [
    "Urgent: share your OTP now",
    "Send OTP immediately or account blocked",
    "Why no OTP yet? this is urgent",
    "Share the OTP right now",
]


# ==============================================================================
# STAGES
# ==============================================================================

def test_stage_progression_over_pushy_otp_turns():
    stage = EngagementStage.CONFUSED
    seen = []
    for turn in range(1, len(PUSHY_OTP_MESSAGES) + 1):
        stage = advance_stage(PUSHY_OTP_MESSAGES[:turn], stage, turn, "stage-test")
        seen.append(stage)

    assert seen == [
        EngagementStage.CONFUSED,
        EngagementStage.SUSPICIOUS,
        EngagementStage.SUSPICIOUS,
        EngagementStage.ASSERTIVE,
    ]


def test_stage_never_regresses():
    messages = PUSHY_OTP_MESSAGES + ["ok", "hello", "fine"]
    stage = EngagementStage.CONFUSED
    for turn in range(1, len(messages) + 1):
        new_stage = advance_stage(messages[:turn], stage, turn)
        assert new_stage.rank >= stage.rank
        stage = new_stage
    assert stage == EngagementStage.ASSERTIVE


def test_turn_gates():
    loud = EngagementSignals(urgencyRepeat=True, sameDemandRepeat=True, pushyRepeat=True)
    assert plan(loud, EngagementStage.CONFUSED, 1) == EngagementStage.CONFUSED
    assert plan(loud, EngagementStage.SUSPICIOUS, 3) == EngagementStage.SUSPICIOUS
    assert plan(loud, EngagementStage.SUSPICIOUS, 4) == EngagementStage.ASSERTIVE
    # one step at a time
    assert plan(loud, EngagementStage.CONFUSED, 9) == EngagementStage.SUSPICIOUS


def test_signals_ignore_blank_messages():
    signals = detect_engagement_signals(["Send OTP", "", "   ", "OTP please"])
    assert signals.sameDemandRepeat
    assert not detect_engagement_signals(["hello", "", "how are you"]).pushyRepeat


# ==============================================================================
# OBJECTIVE LADDER
# ==============================================================================

FIRST_SIX = [
    ASK_CASE_ID, ASK_DESIGNATION_BRANCH, ASK_CALLBACK_NUMBER,
    ASK_TRANSACTION_DETAILS, ASK_DEVICE_LOCATION, ASK_SENDER_ID,
]


def _asked(*intents):
    return TaggedSet("facts.asked", intents)


def test_ladder_walks_in_order():
    intel = IntelligenceRecord()
    assert next_intent(_asked(), [], intel, {}, "hello") == ASK_CASE_ID
    assert next_intent(_asked(ASK_CASE_ID), [], intel, {}, "hello") == ASK_DESIGNATION_BRANCH


def test_recent_and_filled_objectives_are_skipped():
    intel = IntelligenceRecord()
    assert next_intent(_asked(), [ASK_CASE_ID], intel, {}, "hello") == ASK_DESIGNATION_BRANCH
    assert next_intent(_asked(), [], intel, {"case_id": "ref-1"}, "hello") == ASK_DESIGNATION_BRANCH


def test_callback_skipped_once_phone_known():
    intel = extract(["call 9876543210"])
    asked = _asked(ASK_CASE_ID, ASK_DESIGNATION_BRANCH)
    assert next_intent(asked, [], intel, {}, "hello") == ASK_TRANSACTION_DETAILS


def test_link_objective_needs_payment_context():
    asked = _asked(*FIRST_SIX)
    empty = IntelligenceRecord()
    assert next_intent(asked, [], empty, {}, "hello there") == ASK_SECURE_PROCESS
    assert next_intent(asked, [], empty, {}, "click the link to pay") == ASK_LINK_OR_HANDLE


def test_link_objective_skipped_when_both_known():
    asked = _asked(*FIRST_SIX)
    intel = extract(["pay secure@ybl at https://pay.example.com"])
    assert next_intent(asked, [], intel, {}, "pay now", has_link=True, has_upi=True) == ASK_SECURE_PROCESS


def test_question_for_link_objective():
    assert question_for(ASK_LINK_OR_HANDLE, IntelligenceRecord()) == LINK_QUESTION
    assert question_for(ASK_LINK_OR_HANDLE, extract(["https://x.example.com"])) == HANDLE_QUESTION
    assert question_for("unknown_intent").endswith("?")


def test_normalize_intent():
    assert normalize_intent("Case ID") == ASK_CASE_ID
    assert normalize_intent("ask_sender_id") == ASK_SENDER_ID
    assert normalize_intent("which branch") == ASK_DESIGNATION_BRANCH
    assert normalize_intent("weather") is None
    assert normalize_intent("") is None


# ==============================================================================
# MODE & NOTES
# ==============================================================================

def test_decide_mode():
    assert decide_mode(False, 0.1, 3, 14, 0.45) == SessionMode.SAFE
    assert decide_mode(False, 0.5, 3, 14, 0.45) == SessionMode.SUSPECT
    assert decide_mode(True, 0.2, 3, 14, 0.45) == SessionMode.SCAM_CONFIRMED
    assert decide_mode(True, 0.9, 14, 14, 0.45) == SessionMode.COMPLETE
    assert decide_mode(False, 0.9, 20, 14, 0.45) == SessionMode.SUSPECT


def test_agent_notes_format():
    notes = agent_notes(SessionMode.SCAM_CONFIRMED, 0.98, 0.5, ASK_CASE_ID, 3, EngagementStage.SUSPICIOUS)
    assert notes == (
        "mode=SCAM_CONFIRMED, scamScore=0.98, stressScore=0.50, "
        "intent=ask_case_id, turns=3, stage=SUSPICIOUS"
    )
