"""Central configuration via Pydantic Settings. All values driven by env vars."""

from __future__ import annotations

from pydantic_settings import BaseSettings

from grounded_chat.exceptions import ConfigurationError


class Settings(BaseSettings):
    # API Keys
    openai_api_key: str = ""
    openai_base_url: str = ""
    google_api_key: str = ""

    # LLM
    llm_provider: str = "openai"  # "openai" or "gemini"
    chat_model: str = "gpt-5"
    gemini_model: str = "gemini-2.0-flash"
    intent_classifier_model: str = ""
    intent_classifier_max_tokens: int = 500
    answer_temperature: float = 0.3
    answer_max_tokens: int = 3000
    reasoning_effort: str = ""  # "low", "medium", "high"; empty disables reasoning options
    reasoning_summary: str = "auto"

    # Route models (empty falls back to the provider default model)
    model_faq: str = ""
    model_research: str = ""
    model_factual: str = ""
    model_conversational: str = ""
    max_tokens_faq: int = 500
    max_tokens_research: int = 2000
    max_tokens_factual: int = 600
    max_tokens_conversational: int = 400

    # Embedding
    embedding_model: str = "text-embedding-3-large"
    embedding_batch_size: int = 100

    # Search service
    search_endpoint: str = "https://example.search.windows.net"
    search_api_key: str = ""
    search_api_version: str = "2025-08-01-preview"
    search_index_name: str = "earth_at_night"
    search_semantic_config: str = "default"
    search_vector_field: str = "page_embedding_text_3_large"
    knowledge_agent_name: str = "earth-knowledge-agent"
    knowledge_agent_api_version: str = "2025-08-01-preview"

    # Bearer-token auth for the search service (used when search_api_key is empty)
    auth_tenant_id: str = ""
    auth_client_id: str = ""
    auth_client_secret: str = ""
    auth_scope: str = "https://search.azure.com/.default"
    auth_token_url: str = "https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token"

    # Retrieval
    top_k: int = 5
    reranker_threshold: float = 2.5
    retrieval_min_docs: int = 3
    retrieval_fallback_reranker_threshold: float = 1.5
    retrieval_min_reranker_threshold: float = 1.0
    retrieval_strategy: str = "direct"  # "direct", "knowledge_agent" or "hybrid"
    reranking_top_k: int = 10
    rrf_k: int = 60
    semantic_boost_weight: float = 0.3

    # Web search
    web_search_api_key: str = ""
    web_search_engine_id: str = ""
    web_search_endpoint: str = "https://www.googleapis.com/customsearch/v1"
    web_search_mode: str = "full"  # "summary" or "full"
    web_safe_mode: str = "off"
    web_default_recency: str = ""
    web_results_max: int = 6
    web_context_max_tokens: int = 8000

    # Context budgeting
    context_history_token_cap: int = 1800
    context_summary_token_cap: int = 600
    context_salience_token_cap: int = 400
    context_max_recent_turns: int = 12
    context_max_summary_items: int = 6
    context_max_salience_items: int = 6

    # Planner / critic
    planner_confidence_dual_retrieval: float = 0.45
    enable_critic: bool = True
    critic_max_retries: int = 1
    critic_threshold: float = 0.8

    # Adaptive retrieval
    adaptive_min_coverage: float = 0.4
    adaptive_min_diversity: float = 0.3
    adaptive_max_attempts: int = 3

    # Lazy retrieval
    lazy_prefetch_count: int = 10
    lazy_summary_max_chars: int = 300
    lazy_load_threshold: float = 0.5
    lazy_max_hydrations: int = 2

    # Multi-index federation: JSON array or "name:weight:type;..."
    search_indexes: str = ""

    # Query decomposition
    decomposition_complexity_threshold: float = 0.6
    decomposition_max_subqueries: int = 8

    # Semantic memory
    semantic_memory_db_path: str = "data/semantic_memory.db"
    semantic_memory_recall_k: int = 3
    semantic_memory_min_similarity: float = 0.6
    semantic_memory_prune_age_days: int = 90

    # Feature flags
    enable_multi_index_federation: bool = False
    enable_lazy_retrieval: bool = False
    enable_semantic_summary: bool = False
    enable_intent_routing: bool = True
    enable_semantic_memory: bool = False
    enable_query_decomposition: bool = False
    enable_web_reranking: bool = False
    enable_semantic_boost: bool = False
    enable_response_storage: bool = False
    enable_adaptive_retrieval: bool = False

    # Storage paths
    sqlite_trace_db_path: str = "data/traces.db"
    sqlite_session_db_path: str = "data/sessions.db"

    # Resilience
    retry_max_retries: int = 3
    retry_initial_delay_ms: int = 1000
    retry_max_delay_ms: int = 10000
    retry_timeout_ms: int = 30000

    # Server
    host: str = "0.0.0.0"
    port: int = 8787
    cors_origins: str = "http://localhost:5173,http://localhost:5174"
    request_timeout_ms: int = 30000
    log_level: str = "info"

    # Auth / JWT
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    jwt_expiry_minutes: int = 60
    api_keys: str = ""  # comma-separated list of valid API keys

    # Rate limiting and input limits
    rate_limit_requests_per_minute: int = 10
    max_messages: int = 50
    max_message_chars: int = 10000

    model_config = {"env_file": ".env", "env_prefix": "RAG_"}

    @property
    def default_model(self) -> str:
        """Model served by the configured provider when no route model is set."""
        return self.gemini_model if self.llm_provider == "gemini" else self.chat_model

    def resolve_model(self, override: str | None = None) -> str:
        """Return the deployment used for a call, raising when none is configured."""
        model = (override or "").strip() or self.default_model.strip()
        if not model:
            variable = "RAG_GEMINI_MODEL" if self.llm_provider == "gemini" else "RAG_CHAT_MODEL"
            raise ConfigurationError(f"No chat model configured. Set {variable}.")
        return model
