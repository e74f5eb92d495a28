"""Fixed strings and limits shared across the pipeline."""

# Refusal / rejection answers
NO_EVIDENCE_ANSWER = "I do not know. (No grounded evidence retrieved)"
NO_CITATIONS_ANSWER = "I do not know. (No grounded citations available)"
CITATION_VALIDATION_FAILED_ANSWER = "I do not know. (Citation validation failed)"
CITATION_INTEGRITY_REJECTION = (
    "I do not know. (Answer rejected: it cited sources that were not retrieved)"
)
QUALITY_GATE_REFUSAL = (
    "I do not know. (The draft answer did not pass the grounding quality review)"
)
EMPTY_ANSWER = "I do not know."

# Token budgeting
FALLBACK_ENCODING = "o200k_base"

# Memory limits
SESSION_SUMMARY_KEEP = 50
SESSION_SALIENCE_KEEP = 100
SESSION_SUMMARY_LOAD = 20
SESSION_SALIENCE_MAX_AGE_TURNS = 50
COMPACTION_MAX_ITEMS = 6

# Planner limits
PLAN_MAX_STEPS = 4
PLAN_MAX_K = 20
PLAN_QUERY_MAX_CHARS = 500
PLANNER_FALLBACK_CONFIDENCE = 0.3

# Critic defaults when the review call fails
CRITIC_FALLBACK_COVERAGE = 0.8
CRITIC_MAX_ISSUES = 5

# Citation buffer: minimum characters before a mid-stream check
CITATION_BUFFER_MIN_CHARS = 48

# Retrieval
KNOWLEDGE_AGENT_MAX_MESSAGES = 30
ADAPTIVE_EMBED_CHARS = 1500
ADAPTIVE_PREVIEW_CHARS = 200
DECOMPOSITION_SUBQUERY_TOP = 3

# Structural parsing of knowledge agent payloads
GROUNDING_MAX_DEPTH = 40
GROUNDING_HINTS = ("ground", "chain", "support")
CITATION_HINTS = ("citat", "attribut", "reference")
IDENTIFIER_KEYWORDS = ("id", "chunk", "source", "document", "ground")

# Lazy hydration triggers in critic issues
LAZY_INSUFFICIENT_PATTERN = r"insufficient|lack|need more|missing|detail|expand"
