"""Entity extraction from free-text bank descriptions."""

from .entities import (
    KNOWN_VENDORS,
    ExtractedEntities,
    PaymentMethod,
    clean_vendor_name,
    document_number_matches,
    extract_entities,
    extract_vendor,
    extraction_summary,
    normalize_vendor_key,
    vendor_key_for,
)

__all__ = [
    "KNOWN_VENDORS",
    "ExtractedEntities",
    "PaymentMethod",
    "clean_vendor_name",
    "document_number_matches",
    "extract_entities",
    "extract_vendor",
    "extraction_summary",
    "normalize_vendor_key",
    "vendor_key_for",
]
