"""
AGENT CONTROLLER - Reply strategies and the auditor that guarantees a safe reply

PREFERENCE ORDER (first candidate that passes validation wins):
1. Rewritten candidate (second pass over the best one)
2. Audited "best pick" candidate
3. Raw generated candidates, ordered by the realism rubric
4. Deterministic template pools for the current stage and objective
5. Fixed fallback pool, picked by hash(sessionId:turn)  -> agentNotes "fallback"

STRATEGIES (selected by configuration, never duplicated modules):
- TemplateStrategy       : templates only, no network
- SingleProviderStrategy : one back-end, no audit
- CouncilStrategy        : several back-ends + audit + optional rewrite
"""

import logging
import random
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from .candidate_generator import Candidate, CandidateGenerator, TurnContext
from .config import Settings
from .providers import Budget, Provider, parse_json_payload
from .retrieval import ExampleRetriever
from .state_machine import EngagementStage, normalize_intent
from .validator import (
    ReplyValidator,
    ValidationContext,
    is_near_duplicate,
    rank_candidates,
    repair_reply,
    reply_validator,
)

logger = logging.getLogger(__name__)


# ==============================================================================
# DETERMINISTIC REPLY POOLS
# ==============================================================================

TEMPLATE_OPENERS = {
    EngagementStage.CONFUSED: [
        "I didn't get any message about this.",
        "Sorry, I'm a bit lost here.",
        "I'm worried now, this is all very sudden.",
        "My app is loading very slowly right now.",
        "I'm in the metro, the network keeps dropping.",
    ],
    EngagementStage.SUSPICIOUS: [
        "This doesn't sound right to me.",
        "My app isn't showing any alert like this.",
        "I want to check this properly first.",
        "Nobody from my branch told me anything.",
        "I'm hesitant to do anything on chat.",
    ],
    EngagementStage.ASSERTIVE: [
        "You keep repeating the same thing.",
        "I won't share anything on chat.",
        "This doesn't look right at all.",
        "I'll only deal with the official helpline.",
        "Pressure like this makes me doubt you more.",
    ],
}

CLOSING_LINES = [
    "I'll visit my branch tomorrow and sort this out there.",
    "I'm going to check this at the branch in person. Bye.",
    "I'll handle this with my branch directly. Please don't message again.",
]

FALLBACK_REPLIES_LOW = [
    "I'm not sure. Can you confirm your employee ID?",
    "My app shows an error. I'll check and reply.",
    "I'm in a meeting. I'll check with my branch first.",
    "Hold on, I need a minute to read all of this properly.",
    "Sorry, who gave you my name? Let me think first.",
]

FALLBACK_REPLIES_HIGH = [
    "Wait, why OTP here? I'm getting scared.",
    "This feels risky. I'll check with my branch now.",
    "This feels off. Please share your employee ID.",
    "My hands are shaking. Who gave you my name?",
    "Give me some time, my son handles these things.",
]

HIGH_STRESS = 0.6
MODEL_TIERS = ("rewrite", "audit", "generated")


def deterministic_index(seed: str, size: int) -> int:
    value = 0
    for ch in seed:
        value = (value * 31 + ord(ch)) % 100000
    return value % size


def template_candidates(ctx: TurnContext, rng: random.Random) -> List[Candidate]:
    if ctx.closing:
        lines = list(CLOSING_LINES)
        rng.shuffle(lines)
        return [Candidate(line, ctx.objective, "template") for line in lines]

    openers = list(TEMPLATE_OPENERS[ctx.stage])
    rng.shuffle(openers)
    candidates = [Candidate(f"{opener} {ctx.objective_question}", ctx.objective, "template") for opener in openers]
    candidates.append(Candidate(ctx.objective_question, ctx.objective, "template"))
    return candidates


def final_fallback(ctx: TurnContext) -> Candidate:
    pool = FALLBACK_REPLIES_HIGH if ctx.stress_score >= HIGH_STRESS else FALLBACK_REPLIES_LOW
    start = deterministic_index(f"{ctx.session_id}:{ctx.turn_index}", len(pool))
    for offset in range(len(pool)):
        reply = pool[(start + offset) % len(pool)]
        if not is_near_duplicate(reply, ctx.last_replies):
            return Candidate(reply, ctx.objective, "fallback")
    return Candidate(pool[start], ctx.objective, "fallback")


@dataclass
class ReplyDecision:
    reply: str
    intent: str
    source: str
    notes: str = ""

    @property
    def is_fallback(self) -> bool:
        return self.source == "fallback"


# ==============================================================================
# AUDITOR
# ==============================================================================

AUDIT_SYSTEM = (
    "You review short chat replies written by a cautious, ordinary phone user. "
    "Pick the single most natural, safe reply that pursues the objective. "
    'Answer ONLY with JSON: {"approved": true/false, "bestReply": "...", "bestIntent": "...", "reasons": ["..."]}'
)

REWRITE_SYSTEM = (
    "Rewrite the reply so it sounds like a real, slightly anxious person: under 140 characters, "
    "one question at most, no numbers with 3+ digits, no mention of scams or programs. "
    'Answer ONLY with JSON: {"reply": "...", "intent": "..."}'
)


class Auditor:
    """Ranks, validates and optionally rewrites candidates; always returns a reply."""

    def __init__(self, validator: ReplyValidator = reply_validator, reviewer: Optional[Provider] = None,
                 rewriter: Optional[Provider] = None, call_timeout_ms: int = 1800):
        self.validator = validator
        self.reviewer = reviewer
        self.rewriter = rewriter
        self.call_timeout_ms = call_timeout_ms

    @staticmethod
    def validation_context(ctx: TurnContext, max_chars: int) -> ValidationContext:
        return ValidationContext(
            last_replies=list(ctx.last_replies[-3:]),
            stage=ctx.stage,
            closing=ctx.closing,
            turn_index=ctx.turn_index,
            last_message=ctx.last_message,
            has_link=ctx.has_link,
            has_upi=ctx.has_upi,
            max_chars=max_chars,
        )

    async def audit(self, candidates: Sequence[Candidate], ctx: TurnContext, budget: Budget) -> Optional[Candidate]:
        if not candidates or self.reviewer is None:
            return None
        listing = "\n".join(f"{i + 1}. [{c.intent}] {c.reply}" for i, c in enumerate(candidates))
        user = (
            f"Objective: {ctx.objective}\nStage: {ctx.stage.value}\n"
            f"Their last message: \"{ctx.last_message[:300]}\"\n"
            f"Recent replies: {' | '.join(ctx.last_replies[-3:]) or 'none'}\n"
            f"Candidates:\n{listing}"
        )
        payload = parse_json_payload(await self.reviewer.complete(AUDIT_SYSTEM, user, budget, self.call_timeout_ms))
        if payload is None:
            return None
        best = payload.get("bestReply")
        if not isinstance(best, str) or not best.strip():
            return None
        if payload.get("approved") is False:
            logger.info(f"[{ctx.session_id}] Auditor not satisfied: {payload.get('reasons')}")
        intent = normalize_intent(str(payload.get("bestIntent") or "")) or ctx.objective
        return Candidate(best.strip(), intent, "audit")

    async def rewrite(self, candidate: Optional[Candidate], ctx: TurnContext, budget: Budget) -> Optional[Candidate]:
        if candidate is None or self.rewriter is None:
            return None
        user = (
            f"Objective: {ctx.objective} (for example: \"{ctx.objective_question}\")\n"
            f"Their last message: \"{ctx.last_message[:300]}\"\n"
            f"Reply to rewrite: {candidate.reply}"
        )
        payload = parse_json_payload(await self.rewriter.complete(REWRITE_SYSTEM, user, budget, self.call_timeout_ms))
        if payload is None or not isinstance(payload.get("reply"), str) or not payload["reply"].strip():
            return None
        intent = normalize_intent(str(payload.get("intent") or "")) or candidate.intent
        return Candidate(payload["reply"].strip(), intent, "rewrite")

    def ensure_question(self, reply: str, ctx: TurnContext, vctx: ValidationContext) -> str:
        """Append the objective's question when the reply has none and it still validates."""
        if ctx.closing or "?" in reply or not ctx.objective_question:
            return reply
        extended = f"{reply.rstrip()} {ctx.objective_question}"
        if self.validator.validate(extended, vctx).ok:
            return extended
        return reply

    def choose(self, tiers: Sequence[Tuple[str, Sequence[Candidate]]], ctx: TurnContext,
               max_chars: int) -> ReplyDecision:
        vctx = self.validation_context(ctx, max_chars)
        for tier_name, tier in tiers:
            model_written = tier_name in MODEL_TIERS
            valid = []
            for candidate in tier:
                if model_written:
                    candidate = candidate._replace(reply=repair_reply(candidate.reply))
                result = self.validator.validate(candidate.reply, vctx)
                reason = result.reason
                if result.ok:
                    candidate = candidate._replace(reply=self.ensure_question(candidate.reply, ctx, vctx))
                    reason = self.validator.naturalness_problem(candidate.reply) if model_written else None
                if reason is None:
                    valid.append(candidate)
                else:
                    logger.debug(f"[{ctx.session_id}] {tier_name} candidate rejected: {reason}")
            if not valid:
                continue
            if tier_name == "generated":
                valid = rank_candidates(valid, ctx.last_replies)
            chosen = valid[0]
            return ReplyDecision(chosen.reply, chosen.intent, chosen.source)

        logger.warning(f"[{ctx.session_id}] Every candidate rejected, using fallback pool")
        fallback = final_fallback(ctx)
        return ReplyDecision(fallback.reply, fallback.intent, "fallback", notes="fallback")


# ==============================================================================
# STRATEGIES
# ==============================================================================

class ReplyStrategy:
    name = "base"

    def __init__(self, auditor: Auditor, max_chars: int, rng: Optional[random.Random] = None):
        self.auditor = auditor
        self.max_chars = max_chars
        self.rng = rng or random.Random()

    async def compose(self, ctx: TurnContext, budget: Budget) -> ReplyDecision:
        raise NotImplementedError


class TemplateStrategy(ReplyStrategy):
    name = "template"

    async def compose(self, ctx: TurnContext, budget: Budget) -> ReplyDecision:
        return self.auditor.choose([("template", template_candidates(ctx, self.rng))], ctx, self.max_chars)


class SingleProviderStrategy(ReplyStrategy):
    name = "single"

    def __init__(self, generator: CandidateGenerator, auditor: Auditor, max_chars: int,
                 rng: Optional[random.Random] = None):
        super().__init__(auditor, max_chars, rng)
        self.generator = generator

    async def compose(self, ctx: TurnContext, budget: Budget) -> ReplyDecision:
        generated = await self.generator.generate(ctx, budget)
        return self.auditor.choose(
            [("generated", generated), ("template", template_candidates(ctx, self.rng))],
            ctx, self.max_chars,
        )


class CouncilStrategy(SingleProviderStrategy):
    name = "council"

    async def compose(self, ctx: TurnContext, budget: Budget) -> ReplyDecision:
        generated = await self.generator.generate(ctx, budget)
        audited = await self.auditor.audit(generated, ctx, budget)
        best = audited or (generated[0] if generated else None)
        rewritten = await self.auditor.rewrite(best, ctx, budget)
        return self.auditor.choose(
            [
                ("rewrite", [rewritten] if rewritten else []),
                ("audit", [audited] if audited else []),
                ("generated", generated),
                ("template", template_candidates(ctx, self.rng)),
            ],
            ctx, self.max_chars,
        )


def build_strategy(settings: Settings, providers: Sequence[Provider], rng: Optional[random.Random] = None,
                   retriever: Optional[ExampleRetriever] = None) -> ReplyStrategy:
    """Pick the reply strategy named by settings ("auto" decides from the available back-ends)."""
    available = [p for p in providers if p.available]
    choice = settings.reply_strategy
    if choice == "auto":
        choice = "council" if len(available) >= 2 else "single" if available else "template"
    if choice != "template" and not available:
        logger.warning(f"REPLY_STRATEGY={choice} but no back-end has a credential; using templates")
        choice = "template"

    timeout = settings.provider_timeout_ms
    if choice == "template":
        strategy = TemplateStrategy(Auditor(call_timeout_ms=timeout), settings.max_reply_chars, rng)
    elif choice == "single":
        generator = CandidateGenerator(available[:1], timeout, retriever)
        strategy = SingleProviderStrategy(generator, Auditor(call_timeout_ms=timeout),
                                          settings.max_reply_chars_provider, rng)
    else:
        reviewer = next((p for p in available if p.name == "gemini"), available[-1])
        writers = [p for p in available if p is not reviewer] or available
        rewriter = writers[0] if settings.enable_rewrite else None
        generator = CandidateGenerator(writers, timeout, retriever)
        auditor = Auditor(reviewer=reviewer, rewriter=rewriter, call_timeout_ms=timeout)
        strategy = CouncilStrategy(generator, auditor, settings.max_reply_chars_provider, rng)

    logger.info(f"Reply strategy: {strategy.name} ({', '.join(p.name for p in available) or 'no back-ends'})")
    return strategy
