"""Error taxonomy for ingestion, storage, and embedding work.

Terminal ingestion failures carry a user-facing ``message`` plus an optional list of
detail strings; the progress channel forwards both verbatim, so neither may contain
internal details such as SQL or stack traces.
"""

from __future__ import annotations

from typing import Sequence

GENERIC_FAILURE_MESSAGE = "An error occurred while processing the upload"


class IngestionError(Exception):
    def __init__(self, message: str, errors: Sequence[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.errors = list(errors or [])


class HeaderValidationError(IngestionError):
    def __init__(self, missing: Sequence[str]) -> None:
        self.missing = list(missing)
        message = f"Required columns not found: {', '.join(self.missing)}"
        super().__init__(message, [message])


class EmptyUploadError(IngestionError):
    def __init__(self) -> None:
        super().__init__("The uploaded file contains no data")


class TooManyInvalidRowsError(IngestionError):
    def __init__(self, errors: Sequence[str]) -> None:
        super().__init__(
            f"Too many validation errors; showing the first {len(errors)}",
            errors,
        )


class IngestionTimeoutError(IngestionError):
    def __init__(self, processed: int, budget_s: float) -> None:
        self.processed = processed
        super().__init__(
            f"Upload exceeded the {budget_s:g}s time budget after {processed} rows; "
            "rows up to that point were saved"
        )


class StorageError(RuntimeError):
    """A store read or write failed; the original exception is chained."""


class EmbeddingProviderError(RuntimeError):
    """The embedding provider failed for a single text."""
