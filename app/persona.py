"""
PERSONA - Opaque descriptive tags for the synthetic victim, plus the running summary

Tags are picked once per session from an injected random source and only
ever consumed as prompt text.
"""

import random
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from .intelligence_extractor import IntelligenceRecord

LANGUAGE_STYLES = ["english", "hinglish_light"]
TECH_LEVELS = ["low", "medium"]
CONTEXTS = ["office", "traffic", "metro", "home"]
TONES = ["polite", "panicky"]

SIGNATURE_BY_TONE = {
    "polite": [["sir"], ["ji"], ["please"], ["sir", "please"]],
    "panicky": [["pls"], ["please"], ["bhai"], ["sir"], ["pls", "please"]],
}


@dataclass
class Persona:
    personaId: str = ""
    languageStyle: str = "english"
    techLevel: str = "low"
    context: str = "home"
    tone: str = "polite"
    signatureWords: List[str] = field(default_factory=lambda: ["sir"])

    def to_persisted(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_persisted(cls, raw) -> Optional["Persona"]:
        if not isinstance(raw, dict):
            return None
        known = {k: v for k, v in raw.items() if k in cls.__dataclass_fields__}
        return cls(**known)

    def describe(self) -> str:
        return f"{self.tone}, {self.context}, {self.languageStyle}, tech {self.techLevel}"


def create_persona(rng: random.Random) -> Persona:
    tone = rng.choice(TONES)
    return Persona(
        personaId="".join(rng.choice("abcdefghijklmnopqrstuvwxyz0123456789") for _ in range(6)),
        languageStyle=rng.choice(LANGUAGE_STYLES),
        techLevel=rng.choice(TECH_LEVELS),
        context=rng.choice(CONTEXTS),
        tone=tone,
        signatureWords=list(rng.choice(SIGNATURE_BY_TONE[tone])),
    )


def summarize(claim: str, ask: str, intel: IntelligenceRecord, persona: Persona, last_message: str) -> str:
    """Short running summary fed to the generation prompts."""
    got = []
    if intel.upi_ids:
        got.append("UPI")
    if intel.phishing_links:
        got.append("link")
    if intel.phone_numbers or intel.emails:
        got.append("contact")

    lines = [
        f"They claim: {claim or 'unknown claim'}. They ask for: {ask or 'unknown request'}.",
        f"We already got: {', '.join(got)}." if got else "We have no payment details yet.",
        f"Persona: {persona.describe()}.",
    ]
    if last_message:
        lines.append(f"Last message: {last_message[:80]}")
    return " ".join(lines)
