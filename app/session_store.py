"""
SESSION STORE - Per-conversation state, fact merging and optional JSON persistence

SESSION LIFECYCLE:
- Created with defaults on the first message for an id
- Mutated once per turn by the orchestrator, then update()d
- Reset to a fresh state (same external id) on next access when idle for
  longer than the expiry window or already COMPLETE

PERSISTENCE:
An array of session records in one JSON file, rewritten after every
update(). Set-valued fields are TaggedSets and persist as plain arrays.
Records missing newer fields are back-filled with defaults on load.
I/O failures are logged; the in-memory map stays authoritative.
"""

import json
import logging
import os
import random
import re
import tempfile
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .config import Settings
from .intelligence_extractor import IntelligenceRecord
from .persona import Persona, create_persona
from .risk_engine import PersonaState
from .state_machine import EngagementStage, SessionMode
from .tagged_set import TaggedSet

logger = logging.getLogger(__name__)

MAX_LAST_REPLIES = 3
MAX_LAST_INTENTS = 5
MAX_MESSAGES = 50


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Engagement:
    mode: str = SessionMode.SAFE.value
    totalMessagesExchanged: int = 0
    agentMessagesSent: int = 0
    scammerMessagesReceived: int = 0
    startedAt: str = ""
    lastMessageAt: str = ""

    @classmethod
    def from_persisted(cls, raw, timestamp: str) -> "Engagement":
        engagement = cls(startedAt=timestamp, lastMessageAt=timestamp)
        if isinstance(raw, dict):
            for key in asdict(engagement):
                if key in raw and isinstance(raw[key], type(getattr(engagement, key))):
                    setattr(engagement, key, raw[key])
        return engagement


# ==============================================================================
# SESSION FACTS - known-value slots + derived flags
# ==============================================================================

_BRANCH_STOPWORDS = {"the", "your", "my", "our", "this", "that", "which", "nearest", "home", "a", "any", "bank"}
_BRANCH_BEFORE = re.compile(r"\b([a-z]{3,20})\s+branch\b")
_BRANCH_AFTER = re.compile(r"\bbranch\s*(?:is|:|-)?\s*([a-z]{3,20})\b")
_AMOUNT = re.compile(r"(?:\brs\.?|\binr|₹)\s*([\d,]+(?:\.\d{1,2})?)", re.IGNORECASE)

FACT_SLOTS = ("case_id", "branch", "employee_id", "callback_number", "transaction_amount", "sender_id")


@dataclass
class SessionFacts:
    case_id: Optional[str] = None
    branch: Optional[str] = None
    employee_id: Optional[str] = None
    callback_number: Optional[str] = None
    transaction_amount: Optional[str] = None
    sender_id: Optional[str] = None
    hasLink: bool = False
    hasUpi: bool = False
    hasPhone: bool = False
    asked: TaggedSet = field(default_factory=lambda: TaggedSet("facts.asked"))

    def known(self) -> Dict[str, Optional[str]]:
        return {slot: getattr(self, slot) for slot in FACT_SLOTS}

    def absorb(self, intel: IntelligenceRecord, text: str = "") -> None:
        """Fill empty slots from cumulative intelligence and the latest message."""
        def first(values: TaggedSet) -> Optional[str]:
            return next(iter(values), None)

        self.case_id = self.case_id or first(intel.case_ids)
        self.employee_id = self.employee_id or first(intel.employee_ids)
        self.callback_number = self.callback_number or first(intel.phone_numbers)
        self.sender_id = self.sender_id or first(intel.emails)

        lower = (text or "").lower()
        if not self.branch:
            for pattern in (_BRANCH_BEFORE, _BRANCH_AFTER):
                match = pattern.search(lower)
                if match and match.group(1) not in _BRANCH_STOPWORDS:
                    self.branch = match.group(1)
                    break
        if not self.transaction_amount:
            match = _AMOUNT.search(text or "")
            if match:
                self.transaction_amount = match.group(1)

        self.hasLink = self.hasLink or bool(intel.phishing_links)
        self.hasUpi = self.hasUpi or bool(intel.upi_ids)
        self.hasPhone = self.hasPhone or bool(intel.phone_numbers)

    def to_persisted(self) -> Dict:
        data = {slot: getattr(self, slot) for slot in FACT_SLOTS}
        data.update(hasLink=self.hasLink, hasUpi=self.hasUpi, hasPhone=self.hasPhone,
                    asked=self.asked.to_persisted())
        return data

    @classmethod
    def from_persisted(cls, raw) -> "SessionFacts":
        raw = raw if isinstance(raw, dict) else {}
        facts = cls(asked=TaggedSet.from_persisted("facts.asked", raw.get("asked")))
        for slot in FACT_SLOTS:
            if isinstance(raw.get(slot), str):
                setattr(facts, slot, raw[slot])
        facts.hasLink = bool(raw.get("hasLink"))
        facts.hasUpi = bool(raw.get("hasUpi"))
        facts.hasPhone = bool(raw.get("hasPhone")) or bool(facts.callback_number)
        return facts


@dataclass
class SessionMessage:
    sender: str
    text: str
    timestamp: str


@dataclass
class Session:
    sessionId: str
    state: PersonaState = field(default_factory=PersonaState)
    stage: EngagementStage = EngagementStage.CONFUSED
    scamDetected: bool = False
    scamScore: float = 0.0
    stressScore: float = 0.0
    engagement: Engagement = field(default_factory=Engagement)
    intel: IntelligenceRecord = field(default_factory=IntelligenceRecord)
    facts: SessionFacts = field(default_factory=SessionFacts)
    persona: Persona = field(default_factory=Persona)
    lastIntents: List[str] = field(default_factory=list)
    lastReplies: List[str] = field(default_factory=list)
    messages: List[SessionMessage] = field(default_factory=list)
    scammerClaim: str = ""
    scammerAsk: str = ""
    runningSummary: str = ""
    agentNotes: str = ""
    callbackSent: bool = False

    @property
    def mode(self) -> SessionMode:
        return SessionMode(self.engagement.mode)

    def scammer_texts(self) -> List[str]:
        return [m.text for m in self.messages if m.sender == "scammer"]

    def add_message(self, sender: str, text: str, timestamp: str) -> None:
        self.messages.append(SessionMessage(sender, text, timestamp))
        del self.messages[:-MAX_MESSAGES]

    def remember_reply(self, reply: str, intent: str) -> None:
        self.lastReplies = (self.lastReplies + [reply])[-MAX_LAST_REPLIES:]
        self.lastIntents = (self.lastIntents + [intent])[-MAX_LAST_INTENTS:]

    def to_persisted(self) -> Dict:
        return {
            "sessionId": self.sessionId,
            "state": self.state.to_persisted(),
            "stage": self.stage.value,
            "scamDetected": self.scamDetected,
            "scamScore": self.scamScore,
            "stressScore": self.stressScore,
            "engagement": asdict(self.engagement),
            "extractedIntelligence": self.intel.to_persisted(),
            "facts": self.facts.to_persisted(),
            "persona": self.persona.to_persisted(),
            "lastIntents": list(self.lastIntents),
            "lastReplies": list(self.lastReplies),
            "messages": [asdict(m) for m in self.messages],
            "scammerClaim": self.scammerClaim,
            "scammerAsk": self.scammerAsk,
            "runningSummary": self.runningSummary,
            "agentNotes": self.agentNotes,
            "callbackSent": self.callbackSent,
        }

    @classmethod
    def from_persisted(cls, raw: Dict, rng: random.Random, timestamp: str) -> "Session":
        """Hydrate a stored record, back-filling every missing or malformed field."""
        def text(key: str) -> str:
            value = raw.get(key)
            return value if isinstance(value, str) else ""

        def strings(key: str) -> List[str]:
            value = raw.get(key)
            return [v for v in value if isinstance(v, str)] if isinstance(value, list) else []

        def number(key: str) -> float:
            value = raw.get(key)
            return float(value) if isinstance(value, (int, float)) else 0.0

        try:
            stage = EngagementStage(raw.get("stage"))
        except ValueError:
            stage = EngagementStage.CONFUSED

        messages = []
        raw_messages = raw.get("messages")
        for item in raw_messages if isinstance(raw_messages, list) else []:
            if isinstance(item, dict) and isinstance(item.get("text"), str):
                messages.append(SessionMessage(str(item.get("sender", "scammer")), item["text"],
                                               str(item.get("timestamp", ""))))

        engagement = Engagement.from_persisted(raw.get("engagement"), timestamp)
        try:
            SessionMode(engagement.mode)
        except ValueError:
            engagement.mode = SessionMode.SAFE.value

        return cls(
            sessionId=str(raw["sessionId"]),
            state=PersonaState.from_persisted(raw.get("state")),
            stage=stage,
            scamDetected=bool(raw.get("scamDetected", False)),
            scamScore=number("scamScore"),
            stressScore=number("stressScore"),
            engagement=engagement,
            intel=IntelligenceRecord.from_persisted(raw.get("extractedIntelligence")),
            facts=SessionFacts.from_persisted(raw.get("facts")),
            persona=Persona.from_persisted(raw.get("persona")) or create_persona(rng),
            lastIntents=strings("lastIntents")[-MAX_LAST_INTENTS:],
            lastReplies=strings("lastReplies")[-MAX_LAST_REPLIES:],
            messages=messages[-MAX_MESSAGES:],
            scammerClaim=text("scammerClaim"),
            scammerAsk=text("scammerAsk"),
            runningSummary=text("runningSummary"),
            agentNotes=text("agentNotes"),
            callbackSent=bool(raw.get("callbackSent", False)),
        )


class SessionStore:
    """
    Session map keyed by id. Turns for one id are expected to arrive
    serially; concurrent turns for the same id resolve as last write wins.
    """

    def __init__(self, settings: Settings, rng: Optional[random.Random] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.settings = settings
        self.rng = rng or random.Random()
        self.clock = clock
        self.sessions: Dict[str, Session] = {}
        self.persist_file = os.path.abspath(settings.sessions_file) if settings.persist_sessions else None
        if self.persist_file:
            self._load_from_file()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load_from_file(self) -> None:
        if not os.path.exists(self.persist_file):
            return
        try:
            with open(self.persist_file, "r", encoding="utf-8") as f:
                records = json.load(f)
        except (OSError, ValueError) as e:
            logger.error(f"Could not load sessions from {self.persist_file}: {e}")
            return
        if not isinstance(records, list):
            logger.error(f"Ignoring {self.persist_file}: expected an array of sessions")
            return

        now = self.clock().isoformat()
        for record in records:
            if not isinstance(record, dict) or not record.get("sessionId"):
                continue
            session = Session.from_persisted(record, self.rng, now)
            self.sessions[session.sessionId] = session
        logger.info(f"Loaded {len(self.sessions)} session(s) from {self.persist_file}")

    def _save_to_file(self) -> None:
        if not self.persist_file:
            return
        payload = [session.to_persisted() for session in self.sessions.values()]
        # a failed write must leave the previous file intact
        tmp_path = None
        try:
            with tempfile.NamedTemporaryFile("w", encoding="utf-8", dir=os.path.dirname(self.persist_file),
                                             prefix=".sessions-", suffix=".tmp", delete=False) as f:
                tmp_path = f.name
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, self.persist_file)
        except (OSError, TypeError) as e:
            logger.error(f"Could not persist sessions to {self.persist_file}: {e}")
            if tmp_path and os.path.exists(tmp_path):
                os.remove(tmp_path)

    # ------------------------------------------------------------------
    # Access
    # ------------------------------------------------------------------

    def _fresh(self, session_id: str, timestamp: str) -> Session:
        return Session(
            sessionId=session_id,
            engagement=Engagement(startedAt=timestamp, lastMessageAt=timestamp),
            persona=create_persona(self.rng),
        )

    def _is_stale(self, session: Session) -> bool:
        if session.mode == SessionMode.COMPLETE:
            return True
        try:
            last = datetime.fromisoformat(session.engagement.lastMessageAt)
        except (TypeError, ValueError):
            return False
        if last.tzinfo is None:
            last = last.replace(tzinfo=timezone.utc)
        return (self.clock() - last).total_seconds() > self.settings.session_idle_seconds

    def get(self, session_id: str) -> Optional[Session]:
        return self.sessions.get(session_id)

    def get_or_create(self, session_id: str, timestamp: Optional[str] = None) -> Session:
        timestamp = timestamp or self.clock().isoformat()
        existing = self.sessions.get(session_id)
        if existing is None:
            session = self._fresh(session_id, timestamp)
            self.sessions[session_id] = session
            logger.info(f"[{session_id}] New session")
            return session
        if self._is_stale(existing):
            return self.reset_session(existing, timestamp)
        return existing

    def reset_session(self, session: Session, timestamp: Optional[str] = None) -> Session:
        timestamp = timestamp or self.clock().isoformat()
        logger.info(f"[{session.sessionId}] Session reset (was {session.engagement.mode})")
        fresh = self._fresh(session.sessionId, timestamp)
        self.sessions[session.sessionId] = fresh
        self._save_to_file()
        return fresh

    def update(self, session: Session) -> None:
        self.sessions[session.sessionId] = session
        self._save_to_file()
