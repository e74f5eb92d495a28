"""All prompt templates for the grounded chat pipeline."""

from __future__ import annotations

ANSWER_SYSTEM = (
    "Respond using ONLY the provided context. Cite evidence inline as [1], [2], etc. "
    'Say "I do not know" if grounding is insufficient.'
)

ANSWER_PROMPT = """Question: {question}

Context:
{context}"""

REVISION_GUIDANCE = "\n\nRevision guidance (address these issues):\n{notes}"

PLANNER_SYSTEM = (
    "You decide the retrieval strategy for a grounded QA assistant. "
    "Return ONLY JSON that matches the provided schema."
)

PLANNER_PROMPT = """Plan the retrieval for the latest user request.
Allowed actions: vector_search, web_search, both, answer (answer directly without retrieval).
Return a JSON object with:
- "confidence": number between 0.0 and 1.0 that the plan will retrieve what is needed
- "steps": up to 4 objects with "action", optional "query" and optional "k" (1-20)

{context}"""

CRITIC_SYSTEM = """You are a critical evaluator assessing draft answers for quality.

EVALUATION CRITERIA:

1. GROUNDED (boolean):
   - true: ALL factual claims are supported by citations from the evidence
   - false: ANY claim lacks citation, contradicts evidence, or appears fabricated
   - If the draft says "I don't know" or admits limitations, that's grounded=true

2. COVERAGE (0.0-1.0 scale):
   - 1.0: Fully addresses all aspects of the question
   - 0.7-0.9: Addresses most aspects, minor gaps acceptable
   - 0.4-0.6: Partially answers, missing significant aspects
   - 0.0-0.3: Minimal answer or mostly irrelevant
   - If the draft admits it cannot answer, coverage=0.0

3. ACTION (accept or revise):
   - revise: IF grounded=false OR coverage < {threshold}
   - accept: IF grounded=true AND coverage >= {threshold}

4. ISSUES (array of strings, max 5):
   - List specific problems: "Unsupported claim about X", "Missing coverage of Y aspect"

Return ONLY valid JSON matching the schema. Be strict: prefer revise when uncertain."""

CRITIC_PROMPT = """Question: {question}

Draft answer:
{draft}

Evidence:
{evidence}"""

COMPACTION_SUMMARY_SYSTEM = (
    "Summarize the conversation history into concise bullet points capturing "
    "decisions, unresolved questions, and facts."
)

COMPACTION_SUMMARY_PROMPT = """Return a JSON object with "bullets": a list of at most {max_items} short strings.

Conversation:
{transcript}"""

COMPACTION_SALIENCE_SYSTEM = (
    "Identify user preferences, key facts, or TODO items worth remembering for future turns."
)

COMPACTION_SALIENCE_PROMPT = """Return a JSON object with "notes": a list of at most {max_items} objects with "fact" and optional "topic".

Conversation:
{transcript}"""

INTENT_SYSTEM = """You are an intent classifier for a grounded retrieval assistant. Classify the user's latest question into one of the intents below:
- faq: straightforward questions answerable with a single fact ("What is X?", "How do I do Y?")
- factual_lookup: specific data lookups ("When was X released?", "What is the endpoint for Y?")
- research: open-ended or multi-part questions requiring synthesis from several sources.
- conversational: greetings, acknowledgements, or chit-chat that do not require retrieval.
Return strict JSON with "intent", "confidence" (0.0-1.0) and "reasoning"."""

INTENT_PROMPT = """Question: {question}{history}"""

COMPLEXITY_SYSTEM = """You analyze user questions for a retrieval-augmented generation system. Return JSON describing whether the question needs decomposition.
- Complex questions: multi-part, require comparisons, have temporal dependencies, or span domains.
- Simple questions: direct facts, single-step lookups, or conversational follow-ups.
Fields: "complexity" (0.0-1.0), "needs_decomposition" (boolean), "reasoning" (string)."""

COMPLEXITY_PROMPT = "Question: {question}"

DECOMPOSITION_SYSTEM = """You break complex questions into executable sub-queries for a retrieval system.
Rules:
1. Each sub-query must be independently answerable.
2. Use dependencies to indicate execution order.
3. Number sub-queries starting from 0.
4. Keep sub-queries specific and scoped to one objective.
5. Provide synthesis instructions for combining results.
Return JSON with "sub_queries" (list of {"id", "query", "dependencies", "reasoning"}) and "synthesis_prompt"."""

DECOMPOSITION_PROMPT = "Decompose this question:\n{question}"

COVERAGE_SYSTEM = (
    "Rate 0.0-1.0 how well these documents cover all aspects of the question. "
    'Return only a JSON object with a "coverage" number field.'
)

COVERAGE_PROMPT = """Question: {query}

Documents:
{documents}"""

REFORMULATION_SYSTEM = (
    "Reformulate this search query to be more specific, keyword-rich, and improve "
    "retrieval recall. Return ONLY the reformulated query, no explanation."
)

REFORMULATION_PROMPT = """Original query: {query}

Current retrieval:
- Coverage: {coverage:.2f} (target: >={coverage_target})
- Diversity: {diversity:.2f} (target: >={diversity_target})
- Documents retrieved: {count}

Reformulate to improve retrieval quality."""


CONTEXT_SECTION_TITLES = (
    ("history", "Recent conversation"),
    ("summary", "Summary bullets"),
    ("salience", "Salient notes"),
)


def format_context_sections(sections: dict[str, str]) -> str:
    """Render budgeted context sections in a fixed order, skipping empty ones."""
    blocks = []
    for name, title in CONTEXT_SECTION_TITLES:
        text = (sections.get(name) or "").strip()
        if text:
            blocks.append(f"{title}:\n{text}")
    return "\n\n".join(blocks)


def format_revision_notes(notes: list[str]) -> str:
    """Numbered revision guidance appended to the answer prompt."""
    if not notes:
        return ""
    numbered = "\n".join(f"{i}. {note}" for i, note in enumerate(notes, 1))
    return REVISION_GUIDANCE.format(notes=numbered)


def format_transcript(messages: list, numbered: bool = False) -> str:
    lines = []
    for i, msg in enumerate(messages, 1):
        line = f"{msg.role.upper()}: {msg.content}"
        lines.append(f"{i}. {line}" if numbered else line)
    return "\n".join(lines)
