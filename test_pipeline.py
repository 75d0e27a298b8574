"""
END-TO-END PIPELINE TESTS
Full turns through the orchestrator with the template strategy, the HTTP
surface, and the terminal report sender.
"""

import asyncio
import random
import re

import httpx
from fastapi.testclient import TestClient

from app import callback_client
from app.agent_controller import ReplyDecision, ReplyStrategy, build_strategy
from app.callback_client import CallbackNotifier, send_final_result_with_retry
from app.config import Settings
from app.main import create_app
from app.models import ExtractedIntelligence, FinalResultPayload, IncomingRequest, Message
from app.orchestrator import NEUTRAL_REPLY, Orchestrator
from app.session_store import SessionStore
from app.state_machine import EngagementStage, SessionMode
from app.validator import is_near_duplicate

OTP_MESSAGE = "Your account will be blocked today. Share your OTP immediately."


class FakeNotifier:
    def __init__(self):
        self.payloads = []

    def notify(self, payload):
        self.payloads.append(payload)

    async def drain(self):
        return None


def make_orchestrator(**overrides):
    settings = Settings(reply_strategy="template", **overrides)
    rng = random.Random(7)
    return Orchestrator(settings, SessionStore(settings, rng=rng), build_strategy(settings, [], rng=rng),
                        FakeNotifier())


def turn(orchestrator, session_id, text, history=None):
    request = IncomingRequest(
        sessionId=session_id,
        message=Message(sender="scammer", text=text, timestamp=1714557600000),
        conversationHistory=history or [],
    )
    return asyncio.run(orchestrator.handle_turn(request))


def assert_reply_shape(reply, previous):
    assert reply.strip()
    assert len(reply) <= 140
    assert len([line for line in reply.split("\n") if line.strip()]) <= 2
    assert not re.search(r"\d{3,}", reply)
    assert reply.count("?") <= 1
    assert not is_near_duplicate(reply, previous[-3:])


# ==============================================================================
# ORCHESTRATOR
# ==============================================================================

def test_otp_demand_first_turn():
    orchestrator = make_orchestrator()
    response = turn(orchestrator, "otp-1", OTP_MESSAGE)

    assert response.status == "success"
    assert response.scamDetected is True
    assert response.scamScore >= 0.98
    assert response.reply.count("?") == 1
    assert not re.search(r"\d{3,}", response.reply)
    assert response.engagement.mode == SessionMode.SCAM_CONFIRMED.value
    assert response.agentNotes.startswith("mode=SCAM_CONFIRMED, scamScore=0.98")
    assert "intent=ask_case_id" in response.agentNotes
    assert "turns=1" in response.agentNotes


def test_kyc_otp_scenario():
    orchestrator = make_orchestrator()
    response = turn(orchestrator, "kyc-1",
                    "Your KYC is pending. Urgent verify now or account will be blocked. Share OTP.")
    assert response.scamScore >= 0.98
    assert not re.search(r"\d{3,}", response.reply)
    assert response.reply.count("?") == 1


def test_known_payment_details_are_never_requested_again():
    orchestrator = make_orchestrator()
    first = turn(orchestrator, "pay-1", "Pay to secure@ybl here https://secure-verify.example.com.")
    assert first.extractedIntelligence.upiIds == ["secure@ybl"]
    assert first.extractedIntelligence.phishingLinks == ["https://secure-verify.example.com"]

    for text in ["Did you pay? Do it now", "Pay fast or the link expires", "Open the link and pay",
                 "Why no payment yet", "Send it to the UPI now", "Pay pay pay", "Last chance, pay"]:
        reply = turn(orchestrator, "pay-1", text).reply
        assert not re.search(r"\b(?:link|url|website|upi|vpa|beneficiary)\b", reply.lower()), reply


def test_every_reply_respects_safety_rules():
    orchestrator = make_orchestrator()
    replies = []
    messages = [OTP_MESSAGE, "Send OTP immediately or account blocked", "Why no OTP yet? this is urgent",
                "Share the OTP right now", "I am from SBI head office, call 9876543210",
                "Your case id is ref-7788, hurry", "Transfer Rs. 4,999 to avoid penalty",
                "Click https://bit.ly/kyc-now to update", "Last warning, account suspended today"]
    for text in messages:
        reply = turn(orchestrator, "shape-1", text).reply
        assert_reply_shape(reply, replies)
        replies.append(reply)


def test_stage_advances_and_asked_objectives_only_grow():
    orchestrator = make_orchestrator()
    stages, asked = [], []
    for text in [OTP_MESSAGE, "Send OTP immediately or account blocked",
                 "Why no OTP yet? this is urgent", "Share the OTP right now", "ok"]:
        turn(orchestrator, "grow-1", text)
        session = orchestrator.store.get("grow-1")
        stages.append(session.stage)
        asked.append(session.facts.asked.to_persisted())

    assert stages[1] == EngagementStage.SUSPICIOUS
    assert stages[3] == EngagementStage.ASSERTIVE
    assert stages[4] == EngagementStage.ASSERTIVE
    for before, after in zip(asked, asked[1:]):
        assert set(before) <= set(after)
    assert len(asked[-1]) >= 4


def test_counters_advance_once_per_turn():
    orchestrator = make_orchestrator()
    for _ in range(3):
        response = turn(orchestrator, "count-1", "hello, is this the bank?")
    metrics = response.engagement
    assert metrics.totalMessagesExchanged == 3
    assert metrics.agentMessagesSent == 3
    assert metrics.scammerMessagesReceived == 3


def test_complete_session_reports_exactly_once():
    orchestrator = make_orchestrator(max_turns=4)
    responses = [turn(orchestrator, "done-1", OTP_MESSAGE + f" attempt {i}") for i in range(4)]

    final = responses[-1]
    assert final.engagement.mode == SessionMode.COMPLETE.value
    assert "?" not in final.reply
    assert len(orchestrator.notifier.payloads) == 1

    payload = orchestrator.notifier.payloads[0]
    assert payload.sessionId == "done-1"
    assert payload.scamDetected is True
    assert payload.totalMessagesExchanged == 4
    assert "otp" in payload.extractedIntelligence.suspiciousKeywords

    # the next message starts over under the same id
    restarted = turn(orchestrator, "done-1", OTP_MESSAGE)
    assert restarted.engagement.totalMessagesExchanged == 1
    assert restarted.engagement.mode == SessionMode.SCAM_CONFIRMED.value
    assert len(orchestrator.notifier.payloads) == 1


def test_empty_message_is_a_neutral_no_op():
    orchestrator = make_orchestrator()
    response = turn(orchestrator, "empty-1", "   ")
    assert response.reply == NEUTRAL_REPLY
    assert orchestrator.store.get("empty-1") is None

    turn(orchestrator, "empty-1", OTP_MESSAGE)
    again = asyncio.run(orchestrator.handle_turn(IncomingRequest(sessionId="empty-1")))
    assert again.reply == NEUTRAL_REPLY
    assert again.engagement.totalMessagesExchanged == 1
    assert again.scamDetected is True


def test_history_seeds_a_fresh_session_only():
    orchestrator = make_orchestrator()
    history = [Message(sender="scammer", text="Pay the fee to secure@ybl"), Message(sender="user", text="Who?")]
    response = turn(orchestrator, "seed-1", "hello?", history=history)
    assert response.extractedIntelligence.upiIds == ["secure@ybl"]
    assert response.engagement.totalMessagesExchanged == 1

    session = orchestrator.store.get("seed-1")
    seeded = len(session.messages)
    turn(orchestrator, "seed-1", "hello again", history=history)
    assert len(session.messages) == seeded + 2


def test_fallback_turn_is_noted():
    class AlwaysFallback(ReplyStrategy):
        name = "stub"

        async def compose(self, ctx, budget):
            return ReplyDecision("I'm in a meeting. I'll check with my branch first.", ctx.objective, "fallback")

    settings = Settings(reply_strategy="template")
    orchestrator = Orchestrator(settings, SessionStore(settings), AlwaysFallback(None, 140), FakeNotifier())
    response = asyncio.run(orchestrator.handle_turn(
        IncomingRequest(sessionId="fb-1", message=Message(text=OTP_MESSAGE))
    ))
    assert response.agentNotes == "fallback"


# ==============================================================================
# HTTP SURFACE
# ==============================================================================

def test_chat_endpoint_round_trip():
    orchestrator = make_orchestrator()
    with TestClient(create_app(orchestrator=orchestrator)) as client:
        body = {
            "sessionId": "api-1",
            "message": {"sender": "scammer", "text": OTP_MESSAGE, "timestamp": 1714557600000},
            "conversationHistory": [],
            "metadata": {"channel": "SMS", "language": "English", "locale": "IN"},
        }
        response = client.post("/", json=body)
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "success"
        assert data["scamDetected"] is True
        assert data["reply"]
        assert set(data["extractedIntelligence"]) >= {"bankAccounts", "upiIds", "phishingLinks", "caseIds"}

        assert client.post("/chat", json=body).json()["engagement"]["totalMessagesExchanged"] == 2
        assert client.get("/session/api-1").json()["sessionId"] == "api-1"
        assert client.get("/session/missing").status_code == 404
        assert client.get("/health").json()["strategy"] == "template"


def test_malformed_body_gets_neutral_reply():
    with TestClient(create_app(orchestrator=make_orchestrator())) as client:
        response = client.post("/", json={"sessionId": "api-2", "message": "oops"})
        assert response.status_code == 200
        assert response.json()["reply"] == NEUTRAL_REPLY


def test_api_key_enforced_when_configured():
    orchestrator = make_orchestrator(api_key="secret")
    body = {"sessionId": "api-3", "message": {"text": "hello"}}
    with TestClient(create_app(orchestrator=orchestrator)) as client:
        assert client.post("/", json=body).status_code == 403
        assert client.post("/", json=body, headers={"x-api-key": "wrong"}).status_code == 403
        assert client.post("/", json=body, headers={"x-api-key": "secret"}).status_code == 200


# ==============================================================================
# TERMINAL REPORT
# ==============================================================================

def final_payload():
    return FinalResultPayload(
        sessionId="cb-1",
        scamDetected=True,
        totalMessagesExchanged=14,
        extractedIntelligence=ExtractedIntelligence(upiIds=["secure@ybl"]),
        agentNotes="mode=COMPLETE",
    )


def test_callback_retries_until_success():
    statuses = [500, 502, 200]
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(statuses[len(seen) - 1])

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await send_final_result_with_retry(final_payload(), "http://test/report",
                                                      max_attempts=3, base_delay=0, client=client)

    assert asyncio.run(run()) is True
    assert len(seen) == 3
    assert b"secure@ybl" in seen[0].content


def test_callback_gives_up_after_bounded_attempts():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("refused", request=request)

    async def run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await send_final_result_with_retry(final_payload(), "http://test/report",
                                                      max_attempts=2, base_delay=0, client=client)

    assert asyncio.run(run()) is False
    assert len(calls) == 2


def test_notifier_runs_in_background(monkeypatch):
    sent = []

    async def fake_send(payload, url, attempts, timeout, base_delay):
        sent.append((payload.sessionId, url, attempts))
        return True

    monkeypatch.setattr(callback_client, "send_final_result_with_retry", fake_send)

    async def run():
        notifier = CallbackNotifier(Settings(callback_url="http://test/report", callback_attempts=2))
        notifier.notify(final_payload())
        assert sent == []
        await notifier.drain()

    asyncio.run(run())
    assert sent == [("cb-1", "http://test/report", 2)]
