"""FastAPI application factory with lifespan management."""

from __future__ import annotations

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from grounded_chat.api.auth import router as auth_router
from grounded_chat.api.middleware import RequestTimingMiddleware
from grounded_chat.api.rate_limiter import SlidingWindowRateLimiter
from grounded_chat.api.routes_admin import router as admin_router
from grounded_chat.api.routes_chat import router as chat_router
from grounded_chat.api.routes_health import router as health_router
from grounded_chat.clients.gemini_provider import GeminiProvider
from grounded_chat.clients.knowledge_agent import KnowledgeAgentClient
from grounded_chat.clients.openai_provider import OpenAIProvider
from grounded_chat.clients.resilience import RetryPolicy
from grounded_chat.clients.search_client import SearchClient
from grounded_chat.clients.token_cache import TokenCache, client_credentials_refresher
from grounded_chat.clients.web_search import WebSearchClient
from grounded_chat.config.settings import Settings
from grounded_chat.context.budget import ContextBudgeter, EncoderCache
from grounded_chat.context.compaction import HistoryCompactor
from grounded_chat.context.summary_selector import SummarySelector
from grounded_chat.generation.synthesizer import AnswerSynthesizer
from grounded_chat.observability.logger import get_logger, setup_logging
from grounded_chat.observability.telemetry import TelemetryLog
from grounded_chat.pipeline.orchestrator import ChatOrchestrator
from grounded_chat.planning.planner import Planner
from grounded_chat.planning.router import IntentRouter
from grounded_chat.query.decomposition import QueryDecomposer
from grounded_chat.retrieval.adaptive import AdaptiveRetriever, QualityAssessor
from grounded_chat.retrieval.dispatcher import Dispatcher
from grounded_chat.retrieval.fallback import FallbackManager
from grounded_chat.retrieval.federation import FederatedSearcher
from grounded_chat.retrieval.lazy import FullContentCache, LazyRetriever
from grounded_chat.retrieval.retriever import Retriever
from grounded_chat.storage.sqlite_semantic_memory import SQLiteSemanticMemoryStore
from grounded_chat.storage.sqlite_session_store import SQLiteSessionStore
from grounded_chat.storage.sqlite_trace_store import SQLiteTraceStore
from grounded_chat.verification.critic import Critic
from grounded_chat.verification.quality_gate import QualityLoop

logger = get_logger("app")


def retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_retries=settings.retry_max_retries,
        initial_delay_ms=settings.retry_initial_delay_ms,
        max_delay_ms=settings.retry_max_delay_ms,
        timeout_ms=settings.retry_timeout_ms,
    )


def build_llm(settings: Settings):
    if settings.llm_provider == "gemini":
        return GeminiProvider(api_key=settings.google_api_key, model=settings.gemini_model)
    return build_openai(settings)


def build_openai(settings: Settings) -> OpenAIProvider:
    return OpenAIProvider(
        api_key=settings.openai_api_key,
        model=settings.chat_model,
        base_url=settings.openai_base_url or None,
        embedding_model=settings.embedding_model,
        embedding_batch_size=settings.embedding_batch_size,
        reasoning_effort=settings.reasoning_effort,
        reasoning_summary=settings.reasoning_summary,
        store_responses=settings.enable_response_storage,
    )


def build_orchestrator(
    settings: Settings,
    http: httpx.AsyncClient,
    telemetry: TelemetryLog,
    session_store: SQLiteSessionStore | None = None,
    memory_store: SQLiteSemanticMemoryStore | None = None,
    trace_store: SQLiteTraceStore | None = None,
    llm=None,
    embedder=None,
) -> ChatOrchestrator:
    """Wire every turn collaborator from settings."""
    embedder = embedder or build_openai(settings)
    llm = llm or build_llm(settings)
    policy = retry_policy(settings)

    token_cache = TokenCache()
    refresher = client_credentials_refresher(
        http,
        settings.auth_token_url.format(tenant=settings.auth_tenant_id),
        settings.auth_client_id,
        settings.auth_client_secret,
        settings.auth_scope,
    )
    search = SearchClient(http, settings, embedder, token_cache, refresher, telemetry, policy)
    web_search = WebSearchClient(http, settings, telemetry)
    budgeter = ContextBudgeter(EncoderCache(), settings.default_model)

    retriever = Retriever(
        search,
        settings,
        fallback=FallbackManager(search, settings),
        knowledge_agent=KnowledgeAgentClient(search, settings),
        federated=FederatedSearcher(search, settings.search_index_name, settings.search_indexes),
        adaptive=AdaptiveRetriever(
            search,
            llm,
            QualityAssessor(llm, embedder),
            min_coverage=settings.adaptive_min_coverage,
            min_diversity=settings.adaptive_min_diversity,
            max_attempts=settings.adaptive_max_attempts,
        ),
    )
    lazy = LazyRetriever(
        search,
        FullContentCache(),
        budgeter,
        settings.search_index_name,
        prefetch_count=settings.lazy_prefetch_count,
        summary_max_chars=settings.lazy_summary_max_chars,
    )
    dispatcher = Dispatcher(
        retriever,
        budgeter,
        settings,
        web_search=web_search if web_search.configured else None,
        embedder=embedder,
        lazy_retriever=lazy,
        decomposer=QueryDecomposer(
            llm,
            complexity_threshold=settings.decomposition_complexity_threshold,
            max_sub_queries=settings.decomposition_max_subqueries,
        ),
    )
    synthesizer = AnswerSynthesizer(llm, temperature=settings.answer_temperature, max_tokens=settings.answer_max_tokens)
    quality_loop = QualityLoop(synthesizer, Critic(llm, threshold=settings.critic_threshold), settings)

    return ChatOrchestrator(
        router=IntentRouter(llm, settings),
        compactor=HistoryCompactor(llm, max_recent_turns=settings.context_max_recent_turns),
        summary_selector=SummarySelector(embedder),
        budgeter=budgeter,
        planner=Planner(llm, default_k=settings.top_k),
        dispatcher=dispatcher,
        quality_loop=quality_loop,
        settings=settings,
        session_store=session_store,
        memory_store=memory_store,
        trace_store=trace_store,
        telemetry=telemetry,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    setup_logging(settings.log_level)

    # Storage
    session_store = SQLiteSessionStore(settings.sqlite_session_db_path)
    await session_store.initialize()
    trace_store = SQLiteTraceStore(settings.sqlite_trace_db_path)
    await trace_store.initialize()

    embedder = build_openai(settings)
    memory_store = SQLiteSemanticMemoryStore(
        settings.semantic_memory_db_path,
        embedder,
        recall_k=settings.semantic_memory_recall_k,
        min_similarity=settings.semantic_memory_min_similarity,
    )
    await memory_store.initialize()
    if settings.enable_semantic_memory:
        await memory_store.prune(settings.semantic_memory_prune_age_days)

    telemetry = TelemetryLog()
    http = httpx.AsyncClient(timeout=settings.request_timeout_ms / 1000)
    orchestrator = build_orchestrator(
        settings,
        http,
        telemetry,
        session_store=session_store,
        memory_store=memory_store,
        trace_store=trace_store,
        embedder=embedder,
    )

    # Attach to app state
    app.state.orchestrator = orchestrator
    app.state.session_store = session_store
    app.state.memory_store = memory_store
    app.state.trace_store = trace_store
    app.state.telemetry = telemetry

    logger.info(
        "startup_complete",
        llm_provider=settings.llm_provider,
        retrieval_strategy=settings.retrieval_strategy,
        web_search=bool(settings.web_search_api_key),
    )

    yield

    await http.aclose()
    logger.info("shutdown_complete")


def create_app(settings: Settings | None = None) -> FastAPI:
    app = FastAPI(
        title="Grounded Chat",
        version="1.0.0",
        description="Multi-turn chat orchestration with grounded, cited answers",
        lifespan=lifespan,
    )
    app.state.settings = settings or Settings()
    app.state.rate_limiter = SlidingWindowRateLimiter()
    origins = [o.strip() for o in app.state.settings.cors_origins.split(",") if o.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Duration-MS"],
    )
    app.add_middleware(RequestTimingMiddleware)
    app.include_router(health_router, tags=["health"])
    app.include_router(auth_router)
    app.include_router(chat_router, tags=["chat"])
    app.include_router(admin_router)
    return app
