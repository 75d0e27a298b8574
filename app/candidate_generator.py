"""
CANDIDATE GENERATOR - Reply proposals from one or more back-ends within the turn budget

Each back-end gets the same system instruction (persona, tone, hard
constraints) and user context (stage, objective, known facts, last replies,
last adversary message, optional retrieved examples) and is expected to
answer with:

    {"candidates": [{"reply": "...", "intent": "ask_case_id"}, ...]}

Anything else counts as zero candidates.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional, Sequence

from .intelligence_extractor import IntelligenceRecord
from .persona import Persona
from .providers import Budget, Provider, parse_json_payload
from .retrieval import ExampleRetriever
from .state_machine import EngagementStage, normalize_intent

logger = logging.getLogger(__name__)

MAX_CANDIDATES_PER_PROVIDER = 3


class Candidate(NamedTuple):
    reply: str
    intent: str
    source: str


@dataclass
class TurnContext:
    """Everything the reply pipeline may look at for one turn."""
    session_id: str
    turn_index: int
    stage: EngagementStage
    objective: str
    objective_question: str
    last_message: str
    persona: Persona
    intel: IntelligenceRecord
    known_facts: Dict[str, Optional[str]] = field(default_factory=dict)
    last_replies: List[str] = field(default_factory=list)
    summary: str = ""
    scam_score: float = 0.0
    stress_score: float = 0.0
    closing: bool = False
    has_link: bool = False
    has_upi: bool = False


STAGE_TONE = {
    EngagementStage.CONFUSED: "confused and a little worried, polite",
    EngagementStage.SUSPICIOUS: "cautious and doubtful, asking for proof",
    EngagementStage.ASSERTIVE: "firm, not sharing anything, pushing back on repetition",
}


def build_system_prompt(ctx: TurnContext) -> str:
    persona = ctx.persona
    return (
        "You are an ordinary Indian mobile user replying to an unexpected chat message.\n"
        f"Persona: {persona.describe()}. You sometimes say: {', '.join(persona.signatureWords)}.\n"
        f"Tone right now: {STAGE_TONE[ctx.stage]}.\n"
        "RULES:\n"
        "- 1-2 short sentences, under 140 characters\n"
        "- Never share or type any OTP, PIN, password, CVV or account number\n"
        "- Never write numbers with 3 or more digits\n"
        "- Never say you are a program, and never mention scams, fraud or the police\n"
        "- At most one question, and it should pursue the objective\n"
        "- Do not repeat your earlier replies\n"
        'Answer ONLY with JSON: {"candidates": [{"reply": "...", "intent": "..."}]} '
        f"with up to {MAX_CANDIDATES_PER_PROVIDER} candidates."
    )


def build_user_prompt(ctx: TurnContext, examples: Sequence[str] = ()) -> str:
    # Slot names only; values may carry digits the persona must never echo
    known = ", ".join(k for k, v in ctx.known_facts.items() if v) or "none"
    lines = [
        f"Stage: {ctx.stage.value}",
        f"Objective: {ctx.objective} (for example: \"{ctx.objective_question}\")",
        f"Known facts: {known}",
        f"Summary: {ctx.summary or 'none'}",
        f"Your last replies: {' | '.join(ctx.last_replies[-3:]) or 'none'}",
        f"Their last message: \"{ctx.last_message[:300]}\"",
    ]
    if ctx.closing:
        lines.append("This is your last reply: end the chat politely, no question.")
    if examples:
        lines.append("Replies that worked before: " + " | ".join(examples))
    return "\n".join(lines)


def parse_candidates(text: Optional[str], default_intent: str, source: str) -> List[Candidate]:
    payload = parse_json_payload(text)
    if payload is None:
        return []
    items = payload.get("candidates")
    if items is None and isinstance(payload.get("reply"), str):
        items = [payload]
    if not isinstance(items, list):
        return []

    candidates = []
    for item in items[:MAX_CANDIDATES_PER_PROVIDER]:
        if not isinstance(item, dict):
            continue
        reply = item.get("reply")
        if not isinstance(reply, str) or not reply.strip():
            continue
        intent = normalize_intent(str(item.get("intent") or "")) or default_intent
        candidates.append(Candidate(reply.strip().strip('"'), intent, source))
    return candidates


class CandidateGenerator:
    def __init__(self, providers: Sequence[Provider], call_timeout_ms: int,
                 retriever: Optional[ExampleRetriever] = None):
        self.providers = list(providers)
        self.call_timeout_ms = call_timeout_ms
        self.retriever = retriever

    async def generate(self, ctx: TurnContext, budget: Budget) -> List[Candidate]:
        examples: List[str] = []
        if self.retriever is not None:
            examples = await self.retriever.similar(ctx.last_message, budget)

        system = build_system_prompt(ctx)
        user = build_user_prompt(ctx, examples)
        candidates: List[Candidate] = []

        for provider in self.providers:
            if not provider.available:
                continue
            if budget.exhausted():
                logger.info(f"[{ctx.session_id}] Budget spent, skipping remaining back-ends")
                break
            text = await provider.complete(system, user, budget, self.call_timeout_ms)
            found = parse_candidates(text, ctx.objective, provider.name)
            if text is not None and not found:
                logger.warning(f"[{ctx.session_id}] {provider.name}: unparsable output, no candidates")
            candidates.extend(found)

        logger.info(f"[{ctx.session_id}] {len(candidates)} candidate(s) generated")
        return candidates
