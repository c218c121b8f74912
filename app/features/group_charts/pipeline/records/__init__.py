"""
Records package for group charts.

Pure superlative calculations, the group_records lifecycle and the
record-type helpers used by the records detail endpoint.
"""

from .service import RecordsService, dedupe_new_entries, records_service

__all__ = ["RecordsService", "dedupe_new_entries", "records_service"]
