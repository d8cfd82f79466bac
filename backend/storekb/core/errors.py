"""Error taxonomy shared by the ingestion pipeline and the HTTP layer."""

from __future__ import annotations


class StoreKBError(Exception):
    """Base error. ``user_message`` is the only text ever shown to collaborators."""

    code = "internal_error"
    http_status = 500
    retryable = False
    user_message = "Something went wrong while processing this content. Please try again later."

    def __init__(self, detail: str | None = None, *, user_message: str | None = None) -> None:
        super().__init__(detail or self.user_message)
        self.detail = detail or self.user_message
        if user_message is not None:
            self.user_message = user_message


class ValidationError(StoreKBError):
    code = "validation_error"
    http_status = 400
    user_message = "The submitted source is not valid. Please check it and try again."


class RetryLimitExceeded(ValidationError):
    code = "retry_limit_exceeded"
    user_message = (
        "This source has failed too many times. Remove it and add it again to start over."
    )


class JobNotFound(StoreKBError):
    code = "not_found"
    http_status = 404
    user_message = "Job not found."


class NetworkError(StoreKBError):
    code = "network_error"
    http_status = 502
    retryable = True
    user_message = (
        "We couldn't reach this URL. Please check that it is publicly accessible and try again."
    )


class BotProtectionError(StoreKBError):
    code = "bot_protected"
    http_status = 403
    user_message = (
        "This URL is protected against automated access. "
        "Please try a different URL or contact the website administrator."
    )


class ParseError(StoreKBError):
    code = "parse_error"
    http_status = 422
    user_message = "This file could not be read. Please upload a valid, text-based PDF."


class EmptyContentError(ParseError):
    code = "empty_content"
    user_message = "No content to embed for this source."


class EmbeddingAPIError(StoreKBError):
    code = "embedding_error"
    http_status = 502
    retryable = True
    user_message = "The embedding service is temporarily unavailable. Please try again later."


class RateLimitedError(EmbeddingAPIError):
    code = "rate_limited"

    def __init__(self, detail: str | None = None, *, retry_after: float | None = None) -> None:
        super().__init__(detail)
        self.retry_after = retry_after


class PartialEmbeddingError(EmbeddingAPIError):
    """Too few chunks of a job could be embedded to keep the result."""

    code = "partial_embedding"
    user_message = "Too many parts of this content could not be embedded. Please try again later."


class ConcurrencyConflict(StoreKBError):
    code = "concurrency_conflict"
    http_status = 409
    user_message = "This source is already being processed. Please wait for it to finish."


class JobCancelled(StoreKBError):
    """Raised at a pipeline checkpoint when the job was deleted or stopped externally."""

    code = "cancelled"
    http_status = 409
    user_message = "Processing was cancelled."


__all__ = [
    "StoreKBError",
    "ValidationError",
    "RetryLimitExceeded",
    "JobNotFound",
    "NetworkError",
    "BotProtectionError",
    "ParseError",
    "EmptyContentError",
    "EmbeddingAPIError",
    "RateLimitedError",
    "PartialEmbeddingError",
    "ConcurrencyConflict",
    "JobCancelled",
]
