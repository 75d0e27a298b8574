"""
RISK ENGINE - Stateless scam and stress scoring over one normalized message

SCORING MATH:
- Five tactic signals (urgency, authority, threat, credential, payment),
  each 1.0 if any term of its list matches, else 0.0
- scamScore   = mean(signals), then override floors:
    credential ask (OTP/PIN/password)      -> >= 0.98
    link/URL together with urgency         -> >= 0.95
    account-number ask together with urgency -> >= 0.9
- stressScore = mean(urgency, threat, anxiety, confusion, overwhelm)
- Both clamped to [0, 1]

PERSONA STATE:
Five scalars in [0, 1] nudged every turn by bounded additive steps.
"""

import re
from dataclasses import asdict, dataclass
from typing import Dict


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


TACTIC_TERMS = {
    "urgency": ("urgent", "immediately", "within", "today", "now", "asap"),
    "authority": ("bank", "rbi", "police", "customs", "gov", "official", "kyc"),
    "threat": ("blocked", "suspended", "penalty", "legal", "complaint", "fine", "arrest"),
    "credential": ("otp", "password", "pin", "cvv", "verification"),
    "payment": ("transfer", "upi", "payment", "refund", "reward", "prize", "lottery", "link"),
}

SIGNAL_NAMES = tuple(TACTIC_TERMS)

_TACTIC_PATTERNS = {
    name: re.compile(r"\b(?:" + "|".join(terms) + r")") for name, terms in TACTIC_TERMS.items()
}

OTP_ASK = re.compile(r"\b(?:otp|pin|password|upi pin)\b")
LINK_MENTION = re.compile(r"(?:https?|bit\.ly|tinyurl|\blink\b)")
URGENT_WORDING = re.compile(r"\b(?:urgent|immediately|blocked|suspended|asap)\b")
ACCOUNT_ASK = re.compile(r"\b(?:account number|bank account|ifsc|card number)\b")

OTP_FLOOR = 0.98
LINK_URGENCY_FLOOR = 0.95
ACCOUNT_URGENCY_FLOOR = 0.9


@dataclass
class PersonaState:
    """Emotional posture of the synthetic victim, every field in [0, 1]."""
    anxiety: float = 0.2
    confusion: float = 0.2
    overwhelm: float = 0.1
    trustAuthority: float = 0.5
    compliance: float = 0.3

    def to_persisted(self) -> Dict[str, float]:
        return asdict(self)

    @classmethod
    def from_persisted(cls, raw) -> "PersonaState":
        state = cls()
        if isinstance(raw, dict):
            for key in asdict(state):
                value = raw.get(key)
                if isinstance(value, (int, float)):
                    setattr(state, key, clamp01(float(value)))
        return state


@dataclass(frozen=True)
class ScoreResult:
    scamScore: float
    stressScore: float
    signals: Dict[str, bool]


def tactic_signals(normalized_text: str) -> Dict[str, bool]:
    return {name: bool(pattern.search(normalized_text)) for name, pattern in _TACTIC_PATTERNS.items()}


def score(normalized_text: str, prior_state: PersonaState) -> ScoreResult:
    """Score one normalized message against the prior persona state."""
    signals = tactic_signals(normalized_text)
    values = [1.0 if signals[name] else 0.0 for name in SIGNAL_NAMES]

    scam_score = sum(values) / len(values)
    urgent = bool(URGENT_WORDING.search(normalized_text))
    if OTP_ASK.search(normalized_text):
        scam_score = max(scam_score, OTP_FLOOR)
    if LINK_MENTION.search(normalized_text) and urgent:
        scam_score = max(scam_score, LINK_URGENCY_FLOOR)
    if ACCOUNT_ASK.search(normalized_text) and urgent:
        scam_score = max(scam_score, ACCOUNT_URGENCY_FLOOR)

    stress_score = (
        (1.0 if signals["urgency"] else 0.0)
        + (1.0 if signals["threat"] else 0.0)
        + prior_state.anxiety
        + prior_state.confusion
        + prior_state.overwhelm
    ) / 5

    return ScoreResult(
        scamScore=round(clamp01(scam_score), 4),
        stressScore=round(clamp01(stress_score), 4),
        signals=signals,
    )


def nudge_state(state: PersonaState, scam_score: float, stress_score: float) -> PersonaState:
    """Next persona state: small additive steps gated by the scores, clamped."""
    return PersonaState(
        anxiety=clamp01(state.anxiety + (0.1 if scam_score > 0.6 else 0.02)),
        confusion=clamp01(state.confusion + (0.08 if stress_score > 0.5 else 0.02)),
        overwhelm=clamp01(state.overwhelm + (0.06 if stress_score > 0.6 else 0.01)),
        trustAuthority=clamp01(state.trustAuthority + (0.03 if scam_score < 0.4 else -0.01)),
        compliance=clamp01(state.compliance + (0.01 if stress_score > 0.6 else 0.005)),
    )
