"""
Assistant admission-and-retrieval pipeline.

Pipeline Order:
1. Settings - read once per question; a disabled assistant short-circuits
2. Guardrails - rate limits, then daily/monthly budget
3. Session - merge a pending clarification, resolve follow-up references
4. Cache - previously generated answers
5. Canned answers - trivial questions, never search-style ones
6. Clarification - search questions missing a required detail, in an open session
7. Context + model - retrieval context, prompt, generation call
8. Usage - one best-effort ledger row per answered question

Gates 1 and 2 always run before any work that a denial would waste, and the
model is never called unless both pass.
"""

import asyncio
import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from directory_assistant.config.loader import (
    AssistantConfig,
    AssistantSettings,
    RateLimitBackend,
)
from directory_assistant.sdk.openai_client import ModelInvoker, ProviderError
from directory_assistant.storage.counters import InMemoryCounterStore, SQLiteCounterStore
from directory_assistant.storage.models import UsageRecord, UsageSource, UsageStats
from directory_assistant.storage.repository import (
    MarketplaceRepository,
    SettingsRepository,
    UsageRepository,
    initialize_schema,
)

from .cache import ResponseCache
from .canned import CannedAnswerMatcher
from .context_builder import ContextBuilder
from .guardrails import AssistantDisabled, AssistantError, RateGuard
from .intent import detect_intent
from .pricing import PRICING_TABLE, calculate_cost
from .prompt import build_prompt
from .session import ConversationSession, SessionStore, mentions_reference
from .token_counter import TokenUsage
from .usage_recorder import UsageRecorder

logger = logging.getLogger(__name__)

FALLBACK_MESSAGE = (
    "Lo siento, hubo un problema al procesar tu pregunta. Inténtalo nuevamente en unos momentos."
)
CLARIFICATION_PROMPTS = {
    "city": "¿En qué ciudad será tu evento? Así te recomiendo proveedores cercanos. 📍",
}


class EmptyQuestion(AssistantError):
    """Raised when the question has no text."""
    def __init__(self):
        super().__init__("Escribe tu pregunta para que pueda ayudarte.")


@dataclass(frozen=True)
class AskResult:
    """What the chat shows, plus the id feedback is attached to."""
    answer: str
    usage_id: str
    source: UsageSource
    session_id: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AssistantService:
    """Entry point for the chat widget.

    Every collaborator is injected; ``from_config`` wires the default
    sqlite-backed ones. Counter store and cache are shared by all sessions.
    """

    def __init__(
        self,
        settings_repository: SettingsRepository,
        usage_repository: UsageRepository,
        guard: RateGuard,
        cache: ResponseCache,
        canned: CannedAnswerMatcher,
        context_builder: ContextBuilder,
        invoker: ModelInvoker,
        recorder: UsageRecorder,
        sessions: Optional[SessionStore] = None,
        clock: Callable[[], datetime] = _utcnow
    ):
        self.settings_repository = settings_repository
        self.usage_repository = usage_repository
        self.guard = guard
        self.cache = cache
        self.canned = canned
        self.context_builder = context_builder
        self.invoker = invoker
        self.recorder = recorder
        self.sessions = sessions or SessionStore()
        self.clock = clock

    @classmethod
    def from_config(cls, config: AssistantConfig, invoker: Optional[ModelInvoker] = None) -> "AssistantService":
        """Build a service over the configured database and provider.

        Raises:
            ValueError: If the configured model has no pricing entry
        """
        PRICING_TABLE.get_pricing(config.provider.model)
        initialize_schema(config.db_path)
        usage_repository = UsageRepository(config.db_path)
        if config.rate_limit_store == RateLimitBackend.MEMORY:
            counter_store = InMemoryCounterStore()
        else:
            counter_store = SQLiteCounterStore(config.db_path)
        return cls(
            settings_repository=SettingsRepository(config.db_path),
            usage_repository=usage_repository,
            guard=RateGuard(counter_store, usage_repository),
            cache=ResponseCache(),
            canned=CannedAnswerMatcher(),
            context_builder=ContextBuilder(MarketplaceRepository(config.db_path)),
            invoker=invoker or ModelInvoker(config.provider),
            recorder=UsageRecorder(usage_repository)
        )

    async def close(self) -> None:
        """Write out pending usage records."""
        await self.recorder.close()

    def read_settings(self) -> AssistantSettings:
        """Current settings; defaults when the settings row cannot be read."""
        try:
            return self.settings_repository.get_settings()
        except (sqlite3.Error, ValueError) as exc:
            logger.warning("settings unavailable, using defaults error=%r", exc)
            return AssistantSettings()

    def get_welcome_message(self) -> str:
        return self.read_settings().welcome_message

    def open_session(self) -> str:
        """Start a conversation and return its id."""
        return self.sessions.open(max_turns=self.read_settings().max_conversation_turns).session_id

    def close_session(self, session_id: str) -> bool:
        return self.sessions.close(session_id)

    async def submit_feedback(self, usage_id: str, useful: bool) -> bool:
        """Attach useful / not useful feedback to a delivered answer. Best-effort."""
        return await self.recorder.record_feedback(usage_id, useful)

    def get_stats(self, period: str = "today") -> UsageStats:
        """Usage totals for the admin panel.

        Raises:
            ValueError: If period is not one of today, week, month
        """
        return self.usage_repository.get_usage_stats(period, now=self.clock())

    def _session_for(self, session_id: Optional[str], settings: AssistantSettings) -> ConversationSession:
        if session_id is None:
            return ConversationSession(max_turns=settings.max_conversation_turns)
        session = self.sessions.get(session_id)
        if session is None:
            session = self.sessions.open(
                max_turns=settings.max_conversation_turns, session_id=session_id
            )
        session.resize(settings.max_conversation_turns)
        return session

    async def ask(self, question: str, identifier: str, session_id: Optional[str] = None) -> AskResult:
        """Answer one question.

        Args:
            question: The user's text
            identifier: Authenticated user id or network address
            session_id: Open conversation, or None for a one-off question

        Returns:
            AskResult with the answer and the usage id for feedback

        Raises:
            AssistantDisabled: If the assistant is switched off
            RateLimited: If a rate-limit window is exhausted
            BudgetExceeded: If the daily or monthly budget is spent
            EmptyQuestion: If the question has no text
        """
        started = time.monotonic()
        question = (question or "").strip()
        if not question:
            raise EmptyQuestion()

        settings = await asyncio.to_thread(self.read_settings)
        if not settings.enabled:
            raise AssistantDisabled()

        decision = await asyncio.to_thread(self.guard.admit, identifier, settings)
        decision.raise_for_denial(self.clock())

        session = self._session_for(session_id, settings)
        effective = session.resolve_clarification(question) or question
        focused = session.resolve_reference(effective)
        cache_key = f"{effective} {focused}" if focused else effective
        # An unresolved "el segundo" means something different in every session
        cacheable = focused is not None or not mentions_reference(effective)

        cached = self.cache.lookup_entry(cache_key) if cacheable else None
        if cached is not None:
            if cached.candidates:
                session.set_active_context(cached.service_type, list(cached.candidates))
            return self._finish(
                session, identifier, question, effective, cached.answer, UsageSource.CACHE, started
            )

        canned = self.canned.match(effective)
        if canned is not None:
            if cacheable:
                self.cache.store(cache_key, canned)
            return self._finish(session, identifier, question, effective, canned, UsageSource.CANNED, started)

        intent = detect_intent(effective)
        missing = intent.missing_slots
        # A one-off question has no next turn to carry the reply
        if missing and effective == question and session_id is not None:
            session.begin_clarification(effective, missing)
            return self._finish(
                session, identifier, question, effective,
                CLARIFICATION_PROMPTS[missing[0]], UsageSource.CLARIFICATION, started
            )

        context = await self.context_builder.build_context()
        prompt = build_prompt(
            context.text,
            session.get_history(),
            effective,
            settings.max_tokens_per_question,
            intent=intent,
            focused_provider=focused
        )
        try:
            generation = await self.invoker.generate(prompt, settings.max_tokens_per_question)
        except ProviderError as exc:
            logger.warning("generation failed, answering with fallback identifier=%s error=%s", identifier, exc)
            return self._finish(
                session, identifier, question, effective, FALLBACK_MESSAGE,
                UsageSource.FALLBACK, started, error=str(exc) or exc.__class__.__name__
            )
        except asyncio.CancelledError:
            self._finish(
                session, identifier, question, effective, FALLBACK_MESSAGE,
                UsageSource.FALLBACK, started, error="cancelled"
            )
            raise

        usage = TokenUsage(prompt_tokens=generation.input_tokens, completion_tokens=generation.output_tokens)
        cost = calculate_cost(self.invoker.model, usage)
        candidates = context.candidates_for(intent.service_type, intent.city) if intent.is_search else []
        if cacheable:
            self.cache.store(cache_key, generation.text, intent.service_type, candidates)
        if intent.is_search:
            session.set_active_context(intent.service_type, candidates)
        return self._finish(
            session, identifier, question, effective, generation.text, UsageSource.MODEL, started,
            usage=usage, cost=cost
        )

    def _finish(
        self,
        session: ConversationSession,
        identifier: str,
        question: str,
        effective_question: str,
        answer: str,
        source: UsageSource,
        started: float,
        usage: Optional[TokenUsage] = None,
        cost: float = 0.0,
        error: Optional[str] = None
    ) -> AskResult:
        session.append_turn("user", question)
        session.append_turn("assistant", answer)
        usage_id = uuid.uuid4().hex
        self.recorder.record(UsageRecord(
            usage_id=usage_id,
            timestamp=self.clock(),
            session_id=session.session_id,
            identifier=identifier,
            question=effective_question,
            answer=answer,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            cost_usd=cost,
            latency_ms=int((time.monotonic() - started) * 1000),
            source=source,
            error=error
        ))
        return AskResult(answer=answer, usage_id=usage_id, source=source, session_id=session.session_id)
