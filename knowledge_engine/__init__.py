"""
knowledge_engine: local knowledge-base retrieval engine.

Public API for library usage::

    from knowledge_engine import KnowledgeEngine, Config

    with KnowledgeEngine.from_config(Config.load()) as engine:
        engine.ingest("Cats are mammals. Dogs are mammals too.", tags=["animals"])
        for result in engine.search("mammals", method="keyword"):
            print(result.score, result.text)
"""

from .config import Config
from .engine import KnowledgeEngine
from .errors import ErrorKind, KnowledgeBaseError
from .models import Chunk, Entry, EntryReceipt, MetadataFilter, QueryResult
from .retrieval import SearchOptions, SearchResults

__version__ = "0.1.0"

__all__ = [
    "Chunk",
    "Config",
    "Entry",
    "EntryReceipt",
    "ErrorKind",
    "KnowledgeBaseError",
    "KnowledgeEngine",
    "MetadataFilter",
    "QueryResult",
    "SearchOptions",
    "SearchResults",
]
