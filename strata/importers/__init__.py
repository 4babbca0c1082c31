"""Importers for conversation exports."""

from strata.importers.export_parser import (
    ExportParser,
    ParseResult,
    SkippedConversation,
    decode_export,
    load_conversations,
    parse_export,
    review_status,
)

__all__ = [
    "ExportParser",
    "ParseResult",
    "SkippedConversation",
    "decode_export",
    "load_conversations",
    "parse_export",
    "review_status",
]
