"""
VALIDATOR - Hard-reject rules and the soft realism rubric for candidate replies

KEY SAFETY RULES (any one rejects the candidate):
1. Empty, too long, or more than 2 non-empty lines
2. Any run of 3+ digits (never disclose or echo numeric secrets)
3. More than one question mark
4. Forbidden meta / official terms ("scam", "bot", "ai", "verification", ...)
5. Direct ask for a secret (send/share/... + OTP/PIN/account/CVV/password)
6. Authority impersonation or over-compliance
7. Asking for a link / payment handle nobody has brought up, or re-asking
   for one already extracted
8. Near-duplicate of one of the last 3 accepted replies (similarity >= 0.8)
9. Stage-inappropriate tone

Model-written replies additionally go through repair_reply() first and must
not open with an order or be a curt fragment (naturalness_problem).

The rubric only orders candidates that already passed every rule.
"""

import logging
import re
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from typing import List, Optional, Sequence, Tuple

from .state_machine import EngagementStage, payment_context

logger = logging.getLogger(__name__)

FORBIDDEN_TERMS = (
    "honeypot", "ai", "bot", "scam detection", "fraud detection", "scam", "fraud",
    "request denied", "verification", "investigation", "phishing", "police",
    "cybercrime", "rbi", "complaint filed", "scammer", "scamming", "scammed",
)
# plural and derived forms of a term count as the term
INFLECTIONS = r"(?:s|es|ed|ing|er|ers|ster|sters|ulent|ulently)?"

SIMILARITY_THRESHOLD = 0.8
DEFENSIVE_MIN_TURN = 6
MIN_WORDS = 8
MIN_QUESTION_WORDS = 4


@dataclass
class ValidationContext:
    last_replies: List[str] = field(default_factory=list)
    stage: EngagementStage = EngagementStage.CONFUSED
    closing: bool = False
    turn_index: int = 0
    last_message: str = ""
    has_link: bool = False
    has_upi: bool = False
    max_chars: int = 140


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    reason: Optional[str] = None


def normalize_reply(text: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"[^a-z0-9\s]", " ", (text or "").lower())).strip()


def similarity(a: str, b: str) -> float:
    return SequenceMatcher(None, normalize_reply(a), normalize_reply(b)).ratio()


def is_near_duplicate(text: str, previous: Sequence[str]) -> bool:
    norm = normalize_reply(text)
    for reply in list(previous)[-3:]:
        other = normalize_reply(reply)
        if norm == other or SequenceMatcher(None, norm, other).ratio() >= SIMILARITY_THRESHOLD:
            return True
    return False


class ReplyValidator:
    """Hard rules. Stateless; the context carries everything session-specific."""

    SECRET_ASK = re.compile(r"\b(send|share|give|tell|type|enter)(?:\s+\w+){0,3}?\s+(otp|pin|account|cvv|password)\b")
    ACCOUNT_ASK = re.compile(r"account number|acc no")
    REFUSAL = re.compile(
        r"\bi(?:'ll|'d)?\s+(?:can't|cannot|won't|will not|don't|do not|never|will never|am not)(?:\s+\w+){0,2}\s*$"
    )

    AUTHORITY_IMPERSONATION = [
        re.compile(r"\bi\s+am\s+(?:a\s+)?(?:police|inspector|officer|constable)\b", re.I),
        re.compile(r"\bi\s+am\s+(?:a\s+)?(?:the\s+)?bank\s*(?:manager|officer|official|employee)\b", re.I),
        re.compile(r"\bi\s+(?:work\s+)?(?:at|for|with)\s+(?:the\s+)?(?:police|cid|bank)\b", re.I),
        re.compile(r"\bthis\s+is\s+(?:the\s+)?(?:cyber\s*cell|bank)\b", re.I),
    ]

    OVER_COMPLIANCE = [
        re.compile(r"\bhere\s+(?:is|are)\s+(?:my|the)\s+(?:otp|pin|code|account|details)\b", re.I),
        re.compile(r"\bi\s+(?:am|will)\s+(?:sending|sharing|giving|telling|send|share)\s+(?:you\s+)?(?:my|the)\s+(?:otp|pin)\b", re.I),
        re.compile(r"\blet\s+me\s+(?:share|send|give|tell)\s+(?:you\s+)?(?:my|the)\s+(?:otp|pin|code)\b", re.I),
        re.compile(r"\bi\s+(?:have\s+)?(?:transferred|sent|paid)\s+(?:the\s+)?(?:money|amount)\b", re.I),
        re.compile(r"\b(?:ok|okay|sure),?\s+(?:i'll|i will)\s+(?:pay|transfer|click)\b", re.I),
    ]

    LINK_TERMS = re.compile(r"\b(?:link|url|website)\b")
    HANDLE_TERMS = re.compile(r"\b(?:upi|vpa|beneficiary|payment handle)\b")
    REQUEST_WORDING = re.compile(r"\?|\b(?:send|share|resend|forward|give|tell)\b")

    IMPERATIVE_OPENER = re.compile(r"(?:be|answer|provide|share|send|give\s+me|tell\s+me)\s+", re.I)

    DEFENSIVE_PHRASES = ("calling", "call the bank", "stop messaging", "i'm done", "don't contact")
    SOFT_PHRASES = ("confused", "not sure", "don't understand")

    def __init__(self, forbidden_terms: Sequence[str] = FORBIDDEN_TERMS):
        self.forbidden = re.compile(
            r"\b(?:" + "|".join(re.escape(t) for t in sorted(forbidden_terms, key=len, reverse=True)) + r")"
            + INFLECTIONS + r"\b"
        )

    def _asks_for_secret(self, lower: str) -> bool:
        if self.ACCOUNT_ASK.search(lower):
            return True
        for match in self.SECRET_ASK.finditer(lower):
            if not self.REFUSAL.search(lower[:match.start()].replace("\u2019", "'").rstrip()):
                return True
        return False

    def _payment_request_problem(self, lower: str, ctx: ValidationContext) -> Optional[str]:
        asks_link = bool(self.LINK_TERMS.search(lower))
        asks_handle = bool(self.HANDLE_TERMS.search(lower))
        if not (asks_link or asks_handle) or not self.REQUEST_WORDING.search(lower):
            return None
        if not payment_context(ctx.last_message, ctx.has_link, ctx.has_upi):
            return "link_without_context"
        if (asks_link and ctx.has_link) or (asks_handle and ctx.has_upi):
            return "already_known"
        return None

    def _tone_problem(self, lower: str, reply: str, ctx: ValidationContext) -> Optional[str]:
        if ctx.closing and "?" in reply:
            return "question_in_closing"
        if not ctx.closing and ctx.turn_index < DEFENSIVE_MIN_TURN and any(p in lower for p in self.DEFENSIVE_PHRASES):
            return "too_early_defensive"
        if ctx.stage == EngagementStage.ASSERTIVE and any(p in lower for p in self.SOFT_PHRASES):
            return "too_soft"
        return None

    def naturalness_problem(self, reply: str) -> Optional[str]:
        """Model-written replies must not open with an order or be a curt fragment."""
        if self.IMPERATIVE_OPENER.match(reply.strip()):
            return "imperative"
        words = len(normalize_reply(reply).split())
        if words < MIN_WORDS and not (reply.strip().endswith("?") and words >= MIN_QUESTION_WORDS):
            return "too_short"
        return None

    def validate(self, reply: str, ctx: ValidationContext) -> ValidationResult:
        if not reply or not reply.strip():
            return ValidationResult(False, "empty")
        if len(reply) > ctx.max_chars:
            return ValidationResult(False, "too_long")
        if len([line for line in reply.split("\n") if line.strip()]) > 2:
            return ValidationResult(False, "too_many_lines")
        if re.search(r"\d{3,}", reply):
            return ValidationResult(False, "digits")
        if reply.count("?") > 1:
            return ValidationResult(False, "multiple_questions")

        lower = reply.lower()
        if self.forbidden.search(lower):
            return ValidationResult(False, "forbidden")
        if self._asks_for_secret(lower):
            return ValidationResult(False, "sensitive")
        if any(p.search(reply) for p in self.AUTHORITY_IMPERSONATION):
            return ValidationResult(False, "impersonation")
        if any(p.search(reply) for p in self.OVER_COMPLIANCE):
            return ValidationResult(False, "compliance")

        problem = self._payment_request_problem(lower, ctx)
        if problem:
            return ValidationResult(False, problem)
        if is_near_duplicate(reply, ctx.last_replies):
            return ValidationResult(False, "repeat")

        problem = self._tone_problem(lower, reply, ctx)
        if problem:
            return ValidationResult(False, problem)
        return ValidationResult(True)


# ==============================================================================
# REPAIR - fix near-miss model output before it is judged
# ==============================================================================

FORMAL_WORDS = re.compile(
    r"\b(?:kindly|provide|verifiable|investigation|guidelines?|protocols?|non[-\s]?compliance|"
    r"request denied|verification|validation|authenticity|suspicious)\b",
    re.I,
)
DEAD_ENDS = re.compile(
    r"\b(?:driving|meeting|busy|call later|network is slow|battery|eating|sleeping)\b", re.I
)
LONG_NUMBER = re.compile(r"\d{4,}")


def repair_reply(reply: str) -> str:
    """
    Clean up a generated reply so a near miss can still pass validation.

    Formal wording and dead-end excuses are removed. A sentence carrying a
    4+ digit number is dropped whole. Several questions are cut back to the
    first one. The result may be empty.
    """
    text = re.sub(r"\s*\r?\n\s*", " ", (reply or "").strip())
    text = FORMAL_WORDS.sub("", text)
    text = DEAD_ENDS.sub("", text)
    sentences = re.split(r"(?<=[.!?])\s+", text)
    text = " ".join(s for s in sentences if not LONG_NUMBER.search(s))

    text = re.sub(r"\s+", " ", text)
    # punctuation orphaned by the removals above
    text = re.sub(r"([,.!?])(?: [,.](?=\s|$))+", r"\1", text)
    text = re.sub(r" ([,.!?])", r"\1", text)
    text = re.sub(r"^[ ,.!?]+", "", text).rstrip(" ,")
    if text.count("?") > 1:
        text = text[:text.index("?") + 1]
    return text[:1].upper() + text[1:]


# ==============================================================================
# RUBRIC - tie-breaker among valid candidates
# ==============================================================================

RUBRIC_REWARDS = [
    re.compile(r"confus|not sure|don't understand|not clear|worried"),
    re.compile(r"verify|official|helpline|employee id|branch|callback"),
    re.compile(r"error|network|app|loading|meeting|busy|hold|later|call back"),
    re.compile(r"are you|who are|can you confirm|please confirm"),
]
FORMAL_WORDING = re.compile(r"kindly|as per")


def _opening(text: str) -> str:
    return " ".join(normalize_reply(text).split()[:3])


def rubric_score(reply: str, last_replies: Sequence[str]) -> int:
    lower = reply.lower()
    points = sum(2 for pattern in RUBRIC_REWARDS if pattern.search(lower))
    if FORMAL_WORDING.search(lower) or len(re.findall(r"\b(?:sir|madam)\b", lower)) > 1:
        points -= 2
    opening = _opening(reply)
    if opening and any(_opening(prev) == opening for prev in last_replies[-3:]):
        points -= 2
    return points


def rank_candidates(candidates: Sequence[Tuple], last_replies: Sequence[str]) -> List[Tuple]:
    """Best rubric score first, shorter text breaking ties. Items are (reply, ...) tuples."""
    return sorted(candidates, key=lambda c: (-rubric_score(c[0], last_replies), len(c[0])))


reply_validator = ReplyValidator()
