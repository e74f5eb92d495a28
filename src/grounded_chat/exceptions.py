"""Custom exception hierarchy for grounded chat."""


class GroundedChatError(Exception):
    """Base exception for all grounded chat errors."""


class ConfigurationError(GroundedChatError):
    """Error in system configuration."""


class SearchServiceError(GroundedChatError):
    """Non-success response from the search service."""

    def __init__(
        self,
        message: str,
        status: int | None = None,
        correlation_id: str | None = None,
        request_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.correlation_id = correlation_id
        self.request_id = request_id


class RetrievalError(GroundedChatError):
    """Error during retrieval."""


class EmbeddingError(GroundedChatError):
    """Error generating embeddings."""


class GenerationError(GroundedChatError):
    """Error during answer generation."""


class WebSearchError(GroundedChatError):
    """Error calling the web search collaborator."""


class CitationIntegrityError(GroundedChatError):
    """An answer cited a source number outside the citation enumeration."""


class DecompositionCycleError(GroundedChatError):
    """Sub-query dependency graph contains a cycle."""
