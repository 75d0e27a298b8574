"""
REPLY STRATEGY TESTS
Turn budget, back-end failure handling, candidate parsing, the auditor's
preference order and the deterministic fallback.

Back-ends are replaced by FakeProvider; nothing here touches the network.
"""

import asyncio
import json
import random
import time

from app.agent_controller import (
    FALLBACK_REPLIES_HIGH,
    FALLBACK_REPLIES_LOW,
    Auditor,
    CouncilStrategy,
    SingleProviderStrategy,
    TemplateStrategy,
    build_strategy,
    deterministic_index,
    final_fallback,
)
from app.candidate_generator import Candidate, CandidateGenerator, TurnContext, parse_candidates
from app.config import ProviderConfig, Settings
from app.intelligence_extractor import IntelligenceRecord
from app.persona import Persona
from app.providers import Budget, Provider, parse_json_payload
from app.retrieval import BUILTIN_EXAMPLES, ExampleRetriever
from app.state_machine import (
    ASK_CASE_ID,
    ASK_DESIGNATION_BRANCH,
    LADDER_QUESTIONS,
    EngagementStage,
)
from app.validator import is_near_duplicate


class FakeProvider(Provider):
    """Scripted back-end: pops one output per call, optionally slow or failing."""

    def __init__(self, name, outputs=(), delay=0.0, error=None, on_call=None, api_key="test-key"):
        super().__init__(ProviderConfig(name, api_key=api_key, model="fake"))
        self.name = name
        self.outputs = list(outputs)
        self.delay = delay
        self.error = error
        self.on_call = on_call
        self.calls = []

    async def _complete(self, system, user):
        self.calls.append((system, user))
        if self.on_call:
            self.on_call()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.outputs.pop(0) if self.outputs else ""


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def make_ctx(**overrides):
    values = dict(
        session_id="s1",
        turn_index=1,
        stage=EngagementStage.CONFUSED,
        objective=ASK_CASE_ID,
        objective_question=LADDER_QUESTIONS[ASK_CASE_ID],
        last_message="Your account is blocked, share OTP now",
        persona=Persona(),
        intel=IntelligenceRecord(),
    )
    values.update(overrides)
    return TurnContext(**values)


def candidates_json(*replies, intent="case id"):
    return json.dumps({"candidates": [{"reply": r, "intent": intent} for r in replies]})


# ==============================================================================
# BUDGET & PROVIDERS
# ==============================================================================

def test_budget_call_timeout():
    clock = FakeClock()
    budget = Budget(2000, 100, clock=clock)
    assert budget.call_timeout(1800) == 1.8

    clock.now = 1.0
    assert budget.call_timeout(1800) == 0.9

    clock.now = 1.95
    assert budget.call_timeout(1800) is None
    assert budget.exhausted()


def test_provider_skipped_without_credential_or_budget():
    async def run():
        keyless = FakeProvider("groq", ["{}"], api_key="")
        assert await keyless.complete("s", "u", Budget(2000, 100), 1800) is None
        assert keyless.calls == []

        clock = FakeClock()
        spent = Budget(2000, 100, clock=clock)
        clock.now = 3.0
        provider = FakeProvider("groq", ["{}"])
        assert await provider.complete("s", "u", spent, 1800) is None
        assert provider.calls == []

    asyncio.run(run())


def test_slow_provider_is_dropped_at_deadline():
    async def run():
        provider = FakeProvider("groq", ["{}"], delay=1.0)
        started = time.monotonic()
        result = await provider.complete("s", "u", Budget(300, 50), 1800)
        return result, time.monotonic() - started

    result, elapsed = asyncio.run(run())
    assert result is None
    assert elapsed < 0.9


def test_provider_errors_become_none():
    async def run():
        provider = FakeProvider("openai", error=RuntimeError("quota exceeded"))
        return await provider.complete("s", "u", Budget(2000, 100), 1800)

    assert asyncio.run(run()) is None


def test_parse_json_payload():
    assert parse_json_payload('```json\n{"a": 1}\n```') == {"a": 1}
    assert parse_json_payload('Sure! {"a": 2} hope this helps') == {"a": 2}
    assert parse_json_payload("no json here") is None
    assert parse_json_payload("[1, 2]") is None
    assert parse_json_payload(None) is None


# ==============================================================================
# CANDIDATE GENERATOR
# ==============================================================================

def test_parse_candidates_normalizes_intents():
    text = '```json\n{"candidates": [{"reply": "Who is this?", "intent": "case id"}, {"reply": ""}, 5]}\n```'
    assert parse_candidates(text, ASK_DESIGNATION_BRANCH, "groq") == [Candidate("Who is this?", ASK_CASE_ID, "groq")]
    assert parse_candidates('{"reply": "Hello?"}', ASK_DESIGNATION_BRANCH, "x") == [
        Candidate("Hello?", ASK_DESIGNATION_BRANCH, "x")
    ]
    assert parse_candidates("not json", ASK_CASE_ID, "groq") == []


def test_generator_skips_remaining_backends_once_budget_spent():
    clock = FakeClock()

    def spend():
        clock.now = 1.95

    first = FakeProvider("groq", [candidates_json("Sorry, who is this?")], on_call=spend)
    second = FakeProvider("openai", [candidates_json("Which office is this?")])

    async def run():
        generator = CandidateGenerator([first, second], 1800)
        return await generator.generate(make_ctx(), Budget(2000, 100, clock=clock))

    found = asyncio.run(run())
    assert [c.reply for c in found] == ["Sorry, who is this?"]
    assert second.calls == []


def test_generator_prompt_hides_known_fact_values():
    provider = FakeProvider("groq", [candidates_json("Who is this?")])

    async def run():
        ctx = make_ctx(known_facts={"callback_number": "9876543210", "case_id": None})
        await CandidateGenerator([provider], 1800).generate(ctx, Budget(2000, 100))

    asyncio.run(run())
    system, user = provider.calls[0]
    assert "callback_number" in user
    assert "9876543210" not in user
    assert "JSON" in system


def test_retrieval_examples_reach_the_prompt():
    provider = FakeProvider("groq", [candidates_json("Who is this?")])
    retriever = ExampleRetriever()

    async def run():
        ctx = make_ctx(last_message="Your account will be blocked today, share OTP immediately")
        await CandidateGenerator([provider], 1800, retriever).generate(ctx, Budget(2000, 100))

    asyncio.run(run())
    assert BUILTIN_EXAMPLES[0]["reply"] in provider.calls[0][1]


def test_retriever_search_and_bad_file(tmp_path):
    retriever = ExampleRetriever()
    assert retriever.search("share otp immediately account blocked")[0] == BUILTIN_EXAMPLES[0]["reply"]
    assert retriever.search("") == []

    broken = tmp_path / "examples.json"
    broken.write_text("{not json")
    assert ExampleRetriever.from_file(str(broken)).examples == BUILTIN_EXAMPLES

    custom = tmp_path / "custom.json"
    custom.write_text(json.dumps([{"scammer": "parcel stuck", "reply": "Which parcel?"}, {"bad": 1}]))
    assert ExampleRetriever.from_file(str(custom)).search("my parcel is stuck") == ["Which parcel?"]


def test_retriever_ranks_by_tfidf_similarity():
    retriever = ExampleRetriever()
    assert retriever.search("customs says my parcel is held", limit=1) == [BUILTIN_EXAMPLES[5]["reply"]]
    assert retriever.search("what a lovely sunny afternoon") == []
    assert ExampleRetriever([]).search("parcel held") == []


# ==============================================================================
# STRATEGIES
# ==============================================================================

GEN_REPLY = "Sorry, who is this? I never got any alert."
AUDIT_REPLY = "Sorry, which office is this from? I got no alert."
REWRITE_REPLY = "I never got any alert about this. Do you have a ticket or case ID?"


def council(gen_outputs, audit_outputs, rewrite=True):
    settings = Settings(reply_strategy="council", enable_rewrite=rewrite)
    writer = FakeProvider("groq", gen_outputs)
    reviewer = FakeProvider("gemini", audit_outputs)
    return build_strategy(settings, [writer, reviewer], rng=random.Random(3)), writer, reviewer


def audit_json(reply, intent="designation"):
    return json.dumps({"approved": True, "bestReply": reply, "bestIntent": intent, "reasons": []})


def test_build_strategy_selection():
    settings = Settings()
    assert isinstance(build_strategy(settings, [], rng=random.Random(1)), TemplateStrategy)
    assert isinstance(build_strategy(settings, [FakeProvider("groq")]), SingleProviderStrategy)
    assert isinstance(build_strategy(settings, [FakeProvider("groq"), FakeProvider("gemini")]), CouncilStrategy)
    # nothing available, explicit choice degrades to templates
    forced = Settings(reply_strategy="council")
    assert isinstance(build_strategy(forced, [FakeProvider("groq", api_key="")]), TemplateStrategy)


def test_council_prefers_rewrite():
    strategy, writer, reviewer = council(
        [candidates_json(GEN_REPLY), json.dumps({"reply": REWRITE_REPLY, "intent": "ask_case_id"})],
        [audit_json(AUDIT_REPLY)],
    )
    decision = asyncio.run(strategy.compose(make_ctx(), Budget(2000, 100)))
    assert decision.reply == REWRITE_REPLY
    assert decision.source == "rewrite"
    assert len(writer.calls) == 2 and len(reviewer.calls) == 1


def test_council_falls_back_to_audit_when_rewrite_invalid():
    strategy, _, _ = council(
        [candidates_json(GEN_REPLY), json.dumps({"reply": "Send 1234 now?"})],
        [audit_json(AUDIT_REPLY)],
    )
    decision = asyncio.run(strategy.compose(make_ctx(), Budget(2000, 100)))
    assert decision.reply == AUDIT_REPLY
    assert decision.source == "audit"
    assert decision.intent == ASK_DESIGNATION_BRANCH


def test_council_uses_generated_when_reviewer_fails():
    strategy, _, _ = council([candidates_json(GEN_REPLY)], ["the reviewer rambles"], rewrite=False)
    decision = asyncio.run(strategy.compose(make_ctx(), Budget(2000, 100)))
    assert decision.reply == GEN_REPLY
    assert decision.source == "groq"


def test_council_with_garbage_output_uses_templates():
    strategy, _, reviewer = council(["not json at all"], [audit_json(AUDIT_REPLY)])
    decision = asyncio.run(strategy.compose(make_ctx(), Budget(2000, 100)))
    assert decision.source == "template"
    assert decision.reply.endswith(LADDER_QUESTIONS[ASK_CASE_ID])
    assert reviewer.calls == []


def test_single_strategy_appends_objective_question():
    settings = Settings(reply_strategy="single")
    provider = FakeProvider("groq", [candidates_json("Sorry, I'm a bit lost here.")])
    strategy = build_strategy(settings, [provider], rng=random.Random(5))
    decision = asyncio.run(strategy.compose(make_ctx(), Budget(2000, 100)))
    assert decision.reply == "Sorry, I'm a bit lost here. Do you have a ticket or case ID?"


def test_unsafe_generated_replies_never_win():
    settings = Settings(reply_strategy="single")
    provider = FakeProvider("groq", [candidates_json("Please send the OTP here?", "My PIN is 4321.")])
    strategy = build_strategy(settings, [provider], rng=random.Random(5))
    decision = asyncio.run(strategy.compose(make_ctx(), Budget(2000, 100)))
    assert decision.source == "template"


def test_template_strategy_closing_has_no_question():
    strategy = TemplateStrategy(Auditor(), 140, random.Random(9))
    decision = asyncio.run(strategy.compose(make_ctx(closing=True, stage=EngagementStage.ASSERTIVE,
                                                     turn_index=14), Budget(2000, 100)))
    assert "?" not in decision.reply
    assert not decision.is_fallback


# ==============================================================================
# FALLBACK
# ==============================================================================

def test_fallback_is_deterministic():
    ctx = make_ctx(session_id="abc", turn_index=3)
    first = final_fallback(ctx)
    assert first == final_fallback(ctx)
    assert first.reply == FALLBACK_REPLIES_LOW[deterministic_index("abc:3", len(FALLBACK_REPLIES_LOW))]
    assert final_fallback(make_ctx(stress_score=0.8)).reply in FALLBACK_REPLIES_HIGH


def test_fallback_avoids_recent_replies():
    start = deterministic_index("abc:3", len(FALLBACK_REPLIES_LOW))
    ctx = make_ctx(session_id="abc", turn_index=3, last_replies=[FALLBACK_REPLIES_LOW[start]])
    assert final_fallback(ctx).reply != FALLBACK_REPLIES_LOW[start]


def test_auditor_reports_fallback_when_everything_fails():
    decision = Auditor().choose([("generated", [Candidate("call 12345", ASK_CASE_ID, "groq")])], make_ctx(), 140)
    assert decision.is_fallback
    assert decision.notes == "fallback"


def test_fallback_never_repeats_a_recent_reply():
    for pool, stress in ((FALLBACK_REPLIES_LOW, 0.1), (FALLBACK_REPLIES_HIGH, 0.9)):
        for window in (pool[:3], pool[-3:], pool[1:4]):
            ctx = make_ctx(session_id="abc", turn_index=3, stress_score=stress, last_replies=list(window))
            decision = Auditor().choose([("generated", [])], ctx, 140)
            assert decision.is_fallback
            assert not is_near_duplicate(decision.reply, window), decision.reply


# ==============================================================================
# REPAIR OF MODEL OUTPUT
# ==============================================================================

def test_generated_reply_is_repaired_before_validation():
    candidate = Candidate("Sorry I was driving, which branch is this from? And your name?", ASK_CASE_ID, "groq")
    decision = Auditor().choose([("generated", [candidate])], make_ctx(), 140)
    assert decision.reply == "Sorry I was, which branch is this from?"
    assert decision.source == "groq"


def test_curt_or_bossy_generated_replies_lose_to_templates():
    candidates = [
        Candidate("Why?", ASK_CASE_ID, "groq"),
        Candidate("Tell me your branch name and your designation first.", ASK_CASE_ID, "groq"),
    ]
    decision = Auditor().choose(
        [("generated", candidates), ("template", [Candidate(LADDER_QUESTIONS[ASK_CASE_ID], ASK_CASE_ID, "template")])],
        make_ctx(), 140,
    )
    assert decision.source == "template"
    assert decision.reply == LADDER_QUESTIONS[ASK_CASE_ID]


def test_template_tier_is_not_repaired():
    # "meeting" is a dead-end word, but fixed pools are trusted as written
    reply = "I'm in a meeting right now. Do you have a ticket or case ID?"
    decision = Auditor().choose([("template", [Candidate(reply, ASK_CASE_ID, "template")])], make_ctx(), 140)
    assert decision.reply == reply
