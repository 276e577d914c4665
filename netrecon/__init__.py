"""
netrecon
A same-origin crawler that records every network request a site makes and
classifies the traffic into a technology stack and analytics events.

CLI Usage:
    python -m netrecon <url> [options]

    Options:
        --depth         Maximum link depth, 0-5 (default: 2)
        --pages         Stop after this many pages
        --timeout       Page-load timeout in seconds (default: 15)
        --analyze       batch | rag
        --output-dir    Export directory
        --db            SQLite database path
        --headed        Show the browser window
"""

from .errors import (
    InteractionUnavailable,
    ModelAPIError,
    ModelResponseError,
    NavigationError,
    ReconError,
)
from .models import (
    AnalyticsEvent,
    CaptureSet,
    Classification,
    CrawlTask,
    NetworkCall,
    ScanReport,
    TechStackItem,
    VisitRecord,
)
from .utils import normalize_url, same_origin
from .storage import ReconStore
from .session import SessionManager
from .capture_store import CaptureStore
from .embeddings import EmbeddingGenerator
from .similarity_index import SimilarityIndex
from .retrieval import RetrievalOrchestrator, RetrievalResult
from .batching import BatchConfig, BatchPayloadBuilder
from .analysis import AnalysisRunner, parse_model_response
from .transport import BrowserTransport, ScanCommand
from .scheduler import CrawlScheduler, CrawlState, CrawlSummary, SchedulerConfig
from .run_config import ReconRunConfig
from .service import ReconService, ServiceResult

__all__ = [
    # Errors
    'ReconError',
    'ModelAPIError',
    'ModelResponseError',
    'InteractionUnavailable',
    'NavigationError',
    # Data model
    'AnalyticsEvent',
    'CaptureSet',
    'Classification',
    'CrawlTask',
    'NetworkCall',
    'ScanReport',
    'TechStackItem',
    'VisitRecord',
    'normalize_url',
    'same_origin',
    # Storage
    'ReconStore',
    'SessionManager',
    'CaptureStore',
    # Retrieval
    'EmbeddingGenerator',
    'SimilarityIndex',
    'RetrievalOrchestrator',
    'RetrievalResult',
    # Analysis
    'BatchConfig',
    'BatchPayloadBuilder',
    'AnalysisRunner',
    'parse_model_response',
    # Crawl
    'BrowserTransport',
    'ScanCommand',
    'CrawlScheduler',
    'CrawlState',
    'CrawlSummary',
    'SchedulerConfig',
    'ReconRunConfig',
    'ReconService',
    'ServiceResult',
]

__version__ = '0.3.0'
