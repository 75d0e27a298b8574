"""
RETRIEVAL - Optional example lookup that enriches generation prompts

Examples are (adversary message, good reply) pairs ranked by TF-IDF cosine
similarity between their adversary text and the current message. The lookup is one more suspension point
and is bounded like any provider call; a slow or broken lookup yields [].
"""

import asyncio
import json
import logging
from typing import Dict, List, Optional

from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.metrics.pairwise import cosine_similarity

from .intelligence_extractor import normalize_text
from .providers import Budget

logger = logging.getLogger(__name__)

BUILTIN_EXAMPLES = [
    {"scammer": "your account will be blocked today share otp immediately",
     "reply": "OTP on chat feels odd to me. Do you have a ticket or case ID?"},
    {"scammer": "kyc pending update now or account suspended",
     "reply": "My KYC was done at the branch last year. Which branch is this from?"},
    {"scammer": "click this link to verify your account",
     "reply": "The app is loading very slow here. Why is a link needed for this?"},
    {"scammer": "send refund processing fee by upi",
     "reply": "I never asked for a refund. What transaction amount and time is this about?"},
    {"scammer": "this is bank security team unusual login detected",
     "reply": "I didn't log in anywhere new. Which device and city was this login from?"},
    {"scammer": "customs parcel held pay penalty now",
     "reply": "I'm not expecting any parcel. What's the official SMS sender ID or email domain?"},
]

# cosine similarity below this is noise, not a related example
MIN_SIMILARITY = 0.08


class ExampleRetriever:
    def __init__(self, examples: Optional[List[Dict[str, str]]] = None, timeout_ms: int = 300):
        self.examples = examples if examples is not None else BUILTIN_EXAMPLES
        self.timeout_ms = timeout_ms
        self.vectorizer = TfidfVectorizer(stop_words="english", max_features=800)
        self.matrix = None
        if self.examples:
            try:
                self.matrix = self.vectorizer.fit_transform([normalize_text(e["scammer"]) for e in self.examples])
            except ValueError as e:
                # every example was stop words only
                logger.warning(f"Retrieval examples have no usable vocabulary: {e}")

    @classmethod
    def from_file(cls, path: str, timeout_ms: int = 300) -> "ExampleRetriever":
        if not path:
            return cls(timeout_ms=timeout_ms)
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Retrieval examples unreadable ({path}): {e}; using built-in set")
            return cls(timeout_ms=timeout_ms)
        examples = [
            item for item in raw
            if isinstance(item, dict) and isinstance(item.get("scammer"), str) and isinstance(item.get("reply"), str)
        ] if isinstance(raw, list) else []
        return cls(examples, timeout_ms=timeout_ms)

    def search(self, text: str, limit: int = 2) -> List[str]:
        if self.matrix is None or limit <= 0 or not (text or "").strip():
            return []
        query = self.vectorizer.transform([normalize_text(text)])
        sims = cosine_similarity(query, self.matrix).flatten()
        best = sims.argsort()[-limit:][::-1]
        return [self.examples[i]["reply"] for i in best if sims[i] > MIN_SIMILARITY]

    async def similar(self, text: str, budget: Budget, limit: int = 2) -> List[str]:
        timeout = budget.call_timeout(self.timeout_ms)
        if timeout is None:
            return []
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.search, text, limit), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Retrieval lookup timed out, continuing without examples")
            return []
