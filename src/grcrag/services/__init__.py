"""Service layer orchestrations for the answering engine."""

from .cache import TTLCache, make_cache_key
from .confidence import ConfidenceConfig, ConfidenceScorer
from .context import ContextAssembler, ContextConfig
from .generation import AnswerGenerator, GenerationConfig, no_evidence_answer
from .insights import InsightExtractor, InsightsConfig, parse_insights
from .preprocessing import QueryPreprocessor
from .providers import GenerationProvider, GenerationRequest, GenerationResult, build_providers
from .query import AnsweringEngine, ChunkSource, EngineConfig, build_engine
from .query_log import FanoutQueryLog, InMemoryQueryLog, JsonlQueryLog, QueryLog, record_best_effort

__all__ = [
    "AnswerGenerator",
    "AnsweringEngine",
    "ChunkSource",
    "ConfidenceConfig",
    "ConfidenceScorer",
    "ContextAssembler",
    "ContextConfig",
    "EngineConfig",
    "FanoutQueryLog",
    "GenerationConfig",
    "GenerationProvider",
    "GenerationRequest",
    "GenerationResult",
    "InsightExtractor",
    "InsightsConfig",
    "InMemoryQueryLog",
    "JsonlQueryLog",
    "QueryLog",
    "QueryPreprocessor",
    "TTLCache",
    "build_engine",
    "build_providers",
    "make_cache_key",
    "no_evidence_answer",
    "parse_insights",
    "record_best_effort",
]
