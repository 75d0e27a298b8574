"""
CONFIGURATION - One validated settings object for the whole pipeline

Built once at startup from the environment (after load_dotenv) and passed
down by reference. Components never read os.environ themselves.
"""

import os
from dataclasses import dataclass, field, replace
from typing import Dict, Optional

from dotenv import load_dotenv


REPLY_STRATEGIES = ("auto", "template", "single", "council")

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


class ConfigError(ValueError):
    """Raised when a configuration value is missing or out of range."""


def _env_bool(env: Dict[str, str], key: str, default: bool) -> bool:
    raw = env.get(key)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ConfigError(f"{key} must be a boolean, got {raw!r}")


def _env_int(env: Dict[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None


def _env_float(env: Dict[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class ProviderConfig:
    """Credential and model for one generation back-end."""
    name: str
    api_key: str = ""
    model: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)


@dataclass(frozen=True)
class Settings:
    api_key: str = ""

    groq: ProviderConfig = field(default_factory=lambda: ProviderConfig("groq", model="llama-3.1-8b-instant"))
    openai: ProviderConfig = field(default_factory=lambda: ProviderConfig("openai", model="gpt-4o-mini"))
    gemini: ProviderConfig = field(default_factory=lambda: ProviderConfig("gemini", model="gemini-1.5-flash"))

    reply_strategy: str = "auto"

    # Deadlines (milliseconds)
    turn_budget_ms: int = 2000
    provider_timeout_ms: int = 1800
    safety_margin_ms: int = 100
    retrieval_timeout_ms: int = 300

    enable_rewrite: bool = True
    enable_retrieval: bool = False
    retrieval_file: str = ""

    persist_sessions: bool = False
    sessions_file: str = "sessions.json"
    session_idle_seconds: int = 1800

    max_turns: int = 14
    max_reply_chars: int = 140
    max_reply_chars_provider: int = 170

    # Tunable thresholds, not derived from any model
    suspect_threshold: float = 0.45
    scam_threshold: float = 0.6

    callback_url: str = "https://hackathon.guvi.in/api/updateHoneyPotFinalResult"
    callback_attempts: int = 3
    callback_timeout_s: float = 5.0

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env: Optional[Dict[str, str]] = None, dotenv: bool = True) -> "Settings":
        """Build and validate settings from an environment mapping."""
        if env is None:
            if dotenv:
                load_dotenv()
            env = dict(os.environ)

        settings = cls(
            api_key=env.get("HONEYPOT_API_KEY", ""),
            groq=ProviderConfig(
                "groq",
                api_key=env.get("GROQ_API_KEY", ""),
                model=env.get("GROQ_MODEL", "llama-3.1-8b-instant"),
            ),
            openai=ProviderConfig(
                "openai",
                api_key=env.get("OPENAI_API_KEY", ""),
                model=env.get("OPENAI_MODEL", "gpt-4o-mini"),
            ),
            gemini=ProviderConfig(
                "gemini",
                api_key=env.get("GEMINI_API_KEY", ""),
                model=env.get("GEMINI_MODEL", "gemini-1.5-flash"),
            ),
            reply_strategy=env.get("REPLY_STRATEGY", "auto").strip().lower(),
            turn_budget_ms=_env_int(env, "TURN_BUDGET_MS", 2000),
            provider_timeout_ms=_env_int(env, "PROVIDER_TIMEOUT_MS", 1800),
            safety_margin_ms=_env_int(env, "SAFETY_MARGIN_MS", 100),
            retrieval_timeout_ms=_env_int(env, "RETRIEVAL_TIMEOUT_MS", 300),
            enable_rewrite=_env_bool(env, "ENABLE_REWRITE", True),
            enable_retrieval=_env_bool(env, "ENABLE_RETRIEVAL", False),
            retrieval_file=env.get("RETRIEVAL_FILE", ""),
            persist_sessions=_env_bool(env, "SESSION_PERSIST", False),
            sessions_file=env.get("SESSIONS_FILE", "sessions.json"),
            session_idle_seconds=_env_int(env, "SESSION_IDLE_SECONDS", 1800),
            max_turns=_env_int(env, "MAX_TURNS", 14),
            max_reply_chars=_env_int(env, "MAX_REPLY_CHARS", 140),
            max_reply_chars_provider=_env_int(env, "MAX_REPLY_CHARS_PROVIDER", 170),
            suspect_threshold=_env_float(env, "SUSPECT_THRESHOLD", 0.45),
            scam_threshold=_env_float(env, "SCAM_THRESHOLD", 0.6),
            callback_url=env.get("CALLBACK_URL", cls.callback_url),
            callback_attempts=_env_int(env, "CALLBACK_ATTEMPTS", 3),
            callback_timeout_s=_env_float(env, "CALLBACK_TIMEOUT_S", 5.0),
            log_level=env.get("LOG_LEVEL", "INFO").upper(),
        )
        settings.validate()
        return settings

    def validate(self) -> "Settings":
        if self.reply_strategy not in REPLY_STRATEGIES:
            raise ConfigError(
                f"REPLY_STRATEGY must be one of {', '.join(REPLY_STRATEGIES)}, got {self.reply_strategy!r}"
            )
        for name in ("turn_budget_ms", "provider_timeout_ms", "retrieval_timeout_ms",
                     "session_idle_seconds", "max_reply_chars", "max_reply_chars_provider",
                     "callback_attempts"):
            if getattr(self, name) <= 0:
                raise ConfigError(f"{name} must be positive")
        if self.safety_margin_ms < 0 or self.safety_margin_ms >= self.turn_budget_ms:
            raise ConfigError("safety_margin_ms must be in [0, turn_budget_ms)")
        if self.provider_timeout_ms > self.turn_budget_ms:
            raise ConfigError("provider_timeout_ms cannot exceed turn_budget_ms")
        if self.max_turns < 2:
            raise ConfigError("max_turns must be at least 2")
        for name in ("suspect_threshold", "scam_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigError(f"{name} must be within [0, 1]")
        if self.suspect_threshold > self.scam_threshold:
            raise ConfigError("suspect_threshold cannot exceed scam_threshold")
        if self.callback_timeout_s <= 0:
            raise ConfigError("callback_timeout_s must be positive")
        return self

    def with_overrides(self, **changes) -> "Settings":
        """Copy with changed fields, re-validated."""
        return replace(self, **changes).validate()

    @property
    def providers(self) -> Dict[str, ProviderConfig]:
        return {"groq": self.groq, "openai": self.openai, "gemini": self.gemini}
