"""
Shelf

A knowledge-cataloging backend: routes extracted fragments (todos, bugs,
decisions, notes, docs) from a staging table into per-category tables,
folds near-duplicates together, files work under project phases, archives
old sessions and purges stale rows only after a named approval.

Quick Start:
    from shelf import ExtractionRouter, RecordStore

    store = RecordStore(Path("~/.shelf/shelf.db").expanduser())
    stats = ExtractionRouter(store).process_batch()

CLI Usage:
    shelf sort
    shelf consolidate todos --project web-app
    shelf storage flag sessions
    shelf serve

Environment Variables:
    SHELF_STORE_PATH  - Override default store location (~/.shelf)
    SHELF_API_URL     - REST backend URL
    SHELF_API_KEY     - REST backend key
    SHELF_VERBOSE     - Set to 1 for debug logging
"""

from .archiver import Archiver, ArchiverStats, clean_raw_content, extract_summary
from .consolidation import Consolidator, merge_titles
from .duplicates import DuplicateDetector, DuplicateResult
from .errors import PurgeError, ShelfError, StoreError, StoreTimeout, UnknownBucketError
from .phases import PhaseClassifier, find_best_phase
from .record_store import RecordStore
from .retention import RetentionManager, StorageReport
from .router import ExtractionRouter, LegacyRouter, RouterStats
from .similarity import are_similar, extract_terms, similarity
from .status import StatusUpdater

__version__ = "0.1.0"
__all__ = [
    "Archiver",
    "ArchiverStats",
    "clean_raw_content",
    "extract_summary",
    "Consolidator",
    "merge_titles",
    "DuplicateDetector",
    "DuplicateResult",
    "PurgeError",
    "ShelfError",
    "StoreError",
    "StoreTimeout",
    "UnknownBucketError",
    "PhaseClassifier",
    "find_best_phase",
    "RecordStore",
    "RetentionManager",
    "StorageReport",
    "ExtractionRouter",
    "LegacyRouter",
    "RouterStats",
    "are_similar",
    "extract_terms",
    "similarity",
    "StatusUpdater",
]
