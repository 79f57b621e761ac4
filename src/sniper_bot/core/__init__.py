"""
Core - decision making between discovery and execution.

    - SnipeEvaluator: gating pipeline (verification, liquidity) and entry
    - VerificationCache: process-lifetime memo of verification lookups
    - SnipeEngine: bounded worker pool feeding candidates to the evaluator
    - BackgroundTasksManager: periodic position management
"""
from .background_tasks import BackgroundTaskConfig, BackgroundTasksManager
from .engine import EngineConfig, EngineStats, SnipeEngine
from .evaluator import EvaluationResult, EvaluatorConfig, SkipReason, SnipeEvaluator
from .verification_cache import VerificationCache, VerificationOracle, VerificationRecord

__all__ = [
    "BackgroundTaskConfig",
    "BackgroundTasksManager",
    "EngineConfig",
    "EngineStats",
    "SnipeEngine",
    "EvaluationResult",
    "EvaluatorConfig",
    "SkipReason",
    "SnipeEvaluator",
    "VerificationCache",
    "VerificationOracle",
    "VerificationRecord",
]
