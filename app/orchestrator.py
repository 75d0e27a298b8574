"""
ORCHESTRATOR - One inbound adversary message in, one validated reply out

PIPELINE ORDER:
Message -> Extractor -> merge into session intelligence -> Scorer ->
StageMachine (stage + next objective) -> ReplyStrategy (generate, audit,
validate, fall back) -> SessionStore.update -> terminal notifier when the
session is COMPLETE with confirmed risk

A request without message text is answered with a neutral acknowledgement
and leaves every session untouched.
"""

import logging
import random
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from .agent_controller import ReplyStrategy, build_strategy
from .callback_client import CallbackNotifier
from .candidate_generator import TurnContext
from .config import Settings
from .intelligence_extractor import extract, merge, normalize_text
from .log_utils import mask_digits
from .models import (
    EngagementMetrics,
    ExtractedIntelligence,
    FinalResultPayload,
    IncomingRequest,
    IntelligenceReport,
    TurnResponse,
)
from .persona import summarize
from .providers import Budget, build_providers
from .retrieval import ExampleRetriever
from .risk_engine import nudge_state, score
from .session_store import Session, SessionStore, utc_now
from .state_machine import (
    LADDER,
    SessionMode,
    advance_stage,
    agent_notes,
    decide_mode,
    next_intent,
    question_for,
)

logger = logging.getLogger(__name__)

NEUTRAL_REPLY = "Sorry, I didn't get your message. Can you send it again?"


def _message_timestamp(value, fallback: str) -> str:
    if isinstance(value, (int, float)) and value > 0:
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc).isoformat()
    if isinstance(value, str) and value.strip():
        return value.strip()
    return fallback


def intelligence_report(session: Session) -> IntelligenceReport:
    return IntelligenceReport(**session.intel.to_persisted())


def engagement_metrics(session: Session) -> EngagementMetrics:
    e = session.engagement
    return EngagementMetrics(
        mode=e.mode,
        totalMessagesExchanged=e.totalMessagesExchanged,
        agentMessagesSent=e.agentMessagesSent,
        scammerMessagesReceived=e.scammerMessagesReceived,
        startedAt=e.startedAt,
        lastMessageAt=e.lastMessageAt,
    )


class Orchestrator:
    def __init__(self, settings: Settings, store: SessionStore, strategy: ReplyStrategy,
                 notifier: CallbackNotifier, monotonic: Callable[[], float] = time.monotonic,
                 clock: Callable[[], datetime] = utc_now):
        self.settings = settings
        self.store = store
        self.strategy = strategy
        self.notifier = notifier
        self.monotonic = monotonic
        self.clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, rng: Optional[random.Random] = None) -> "Orchestrator":
        rng = rng or random.Random()
        retriever = None
        if settings.enable_retrieval:
            retriever = ExampleRetriever.from_file(settings.retrieval_file, settings.retrieval_timeout_ms)
        strategy = build_strategy(settings, build_providers(settings), rng=rng, retriever=retriever)
        return cls(settings, SessionStore(settings, rng=rng), strategy, CallbackNotifier(settings))

    def _neutral_response(self, session_id: str) -> TurnResponse:
        session = self.store.get(session_id) if session_id else None
        if session is None:
            return TurnResponse(sessionId=session_id, reply=NEUTRAL_REPLY)
        return TurnResponse(
            sessionId=session_id,
            scamDetected=session.scamDetected,
            scamScore=session.scamScore,
            stressScore=session.stressScore,
            engagement=engagement_metrics(session),
            reply=NEUTRAL_REPLY,
            extractedIntelligence=intelligence_report(session),
            agentNotes=session.agentNotes,
        )

    def _seed_history(self, session: Session, request: IncomingRequest, timestamp: str) -> None:
        """A fresh session takes the caller's history once; counters are not touched."""
        if session.messages or session.engagement.scammerMessagesReceived or not request.conversationHistory:
            return
        for item in request.conversationHistory:
            if item.text and item.text.strip():
                session.add_message(item.sender or "scammer", item.text, _message_timestamp(item.timestamp, timestamp))
        seeded = [m.text for m in session.messages if m.sender == "scammer"]
        session.intel = merge(session.intel, extract(seeded))
        logger.info(f"[{session.sessionId}] Seeded {len(session.messages)} message(s) from history")

    async def handle_turn(self, request: IncomingRequest) -> TurnResponse:
        session_id = (request.sessionId or "").strip()
        text = request.message.text.strip() if request.message and request.message.text else ""
        if not session_id or not text:
            logger.info(f"[{session_id or '-'}] Empty turn, neutral acknowledgement")
            return self._neutral_response(session_id)

        now = self.clock().isoformat()
        session = self.store.get_or_create(session_id, now)
        self._seed_history(session, request, now)
        session.add_message("scammer", text, _message_timestamp(request.message.timestamp, now))

        # Extraction + scoring
        merged = merge(session.intel, extract([text]))
        normalized = normalize_text(text)
        scores = score(normalized, session.state)
        scam_detected = session.scamDetected or scores.scamScore >= self.settings.scam_threshold

        turn_count = session.engagement.scammerMessagesReceived + 1
        projected_total = session.engagement.totalMessagesExchanged + 1

        # Stage + objective
        stage = advance_stage(session.scammer_texts(), session.stage, turn_count, session_id)
        session.facts.absorb(merged, text)
        mode = decide_mode(scam_detected, scores.scamScore, projected_total,
                           self.settings.max_turns, self.settings.suspect_threshold)
        objective = next_intent(session.facts.asked, session.lastIntents, merged, session.facts.known(),
                                text, session.facts.hasLink, session.facts.hasUpi)

        if not session.scammerClaim and scores.signals["authority"]:
            session.scammerClaim = "authority claim"
        if not session.scammerAsk and scores.signals["credential"]:
            session.scammerAsk = "credential request"
        session.runningSummary = summarize(session.scammerClaim, session.scammerAsk, merged, session.persona, text)

        logger.info(
            f"[{session_id}] Turn {turn_count}: scam={scores.scamScore:.2f} stress={scores.stressScore:.2f} "
            f"stage={stage.value} mode={mode.value} objective={objective} msg=\"{mask_digits(text[:60])}\""
        )

        ctx = TurnContext(
            session_id=session_id,
            turn_index=turn_count,
            stage=stage,
            objective=objective,
            objective_question=question_for(objective, merged),
            last_message=text,
            persona=session.persona,
            intel=merged,
            known_facts=session.facts.known(),
            last_replies=list(session.lastReplies),
            summary=session.runningSummary,
            scam_score=scores.scamScore,
            stress_score=scores.stressScore,
            closing=mode == SessionMode.COMPLETE,
            has_link=session.facts.hasLink,
            has_upi=session.facts.hasUpi,
        )
        budget = Budget(self.settings.turn_budget_ms, self.settings.safety_margin_ms, clock=self.monotonic)
        decision = await self.strategy.compose(ctx, budget)

        # Commit the turn
        session.state = nudge_state(session.state, scores.scamScore, scores.stressScore)
        session.stage = stage
        session.scamDetected = scam_detected
        session.scamScore = scores.scamScore
        session.stressScore = scores.stressScore
        session.intel = merged
        session.facts.asked.add(objective)
        if decision.intent in LADDER:
            session.facts.asked.add(decision.intent)
        session.remember_reply(decision.reply, decision.intent or objective)
        session.add_message("honeypot", decision.reply, now)

        engagement = session.engagement
        engagement.totalMessagesExchanged = projected_total
        engagement.scammerMessagesReceived += 1
        engagement.agentMessagesSent += 1
        engagement.mode = mode.value
        engagement.lastMessageAt = now

        if decision.is_fallback:
            session.agentNotes = "fallback"
        else:
            session.agentNotes = agent_notes(mode, scores.scamScore, scores.stressScore, objective,
                                             projected_total, stage)

        notify = mode == SessionMode.COMPLETE and scam_detected and not session.callbackSent
        if notify:
            session.callbackSent = True
        self.store.update(session)

        if notify:
            self.notifier.notify(FinalResultPayload(
                sessionId=session_id,
                scamDetected=True,
                totalMessagesExchanged=engagement.totalMessagesExchanged,
                extractedIntelligence=ExtractedIntelligence(
                    bankAccounts=merged.bank_accounts.to_persisted(),
                    upiIds=merged.upi_ids.to_persisted(),
                    phishingLinks=merged.phishing_links.to_persisted(),
                    phoneNumbers=merged.phone_numbers.to_persisted(),
                    suspiciousKeywords=merged.suspicious_keywords.to_persisted(),
                ),
                agentNotes=session.agentNotes,
            ))

        return TurnResponse(
            sessionId=session_id,
            scamDetected=scam_detected,
            scamScore=scores.scamScore,
            stressScore=scores.stressScore,
            engagement=engagement_metrics(session),
            reply=decision.reply,
            extractedIntelligence=intelligence_report(session),
            agentNotes=session.agentNotes,
        )
