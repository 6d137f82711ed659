"""
KRX valuation: directory sync → page fetch → field extraction → valuation → persist.
"""

from .page_fetcher import PageFetcher
from .extractor import FieldExtractor, Metric, PageTemplate
from .directory_sync import InstrumentDirectorySync
from .batch_job import FundamentalsBatchJob
from .repository import InstrumentRepository
from .snapshot_store import ResultSnapshotStore
from .service import ValuationService

__all__ = [
    "PageFetcher",
    "FieldExtractor",
    "Metric",
    "PageTemplate",
    "InstrumentDirectorySync",
    "FundamentalsBatchJob",
    "InstrumentRepository",
    "ResultSnapshotStore",
    "ValuationService",
]
