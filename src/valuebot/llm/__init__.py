from .client import (
    CompletionClient,
    CompletionRequest,
    HttpCompletionClient,
    response_text,
)

__all__ = ["CompletionClient", "CompletionRequest", "HttpCompletionClient", "response_text"]
