"""
Ingestion module for OwnTracks location reports.

This module provides the IngestionService that decodes, validates and
stores inbound reports, and serves stored records back.
"""

from ingestion.service import (
    IngestionService,
    IngestResult,
    header_value,
    parse_body,
)

__all__ = [
    "IngestionService",
    "IngestResult",
    "header_value",
    "parse_body",
]
