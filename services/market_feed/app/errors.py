"""
Exceptions raised by the ingestion pipeline.

Only NoCapacityError and SyncError are allowed to escape a sync cycle;
everything else is absorbed per item and reported in the IngestionResult.
"""
from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for ingestion pipeline errors."""


class ConfigError(PipelineError):
    """A source configuration failed validation."""


class NoCapacityError(PipelineError):
    """Every session in the identity pool is blocked."""

    def __init__(self, source_id: str, blocked: int):
        super().__init__(f"[{source_id}] all {blocked} sessions blocked")
        self.source_id = source_id
        self.blocked = blocked


class FetchError(PipelineError):
    """A request could not be completed."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class TransportFailure(FetchError):
    """Timeout, DNS failure, connection reset or proxy failure."""


class UpstreamServerError(FetchError):
    """The upstream answered with a 5xx status."""

    def __init__(self, message: str, status_code: int, url: Optional[str] = None):
        super().__init__(message, url=url)
        self.status_code = status_code


class RetriesExhaustedError(FetchError):
    """Every attempt for one logical request was blocked or failed."""

    def __init__(self, message: str, attempts: int, url: Optional[str] = None):
        super().__init__(message, url=url)
        self.attempts = attempts


class SyncError(PipelineError):
    """An upstream failure that makes the whole cycle unrecoverable."""
