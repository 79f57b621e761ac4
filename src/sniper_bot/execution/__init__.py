"""
Execution Layer - trade submission and position lifecycle.

This module provides:
    - TradeExecutor: approve + swap with gas premium and deadline
    - ExecutionConfig: router / base asset / slippage / dry-run settings
    - TradeResult: outcome of a buy or sell
    - PositionManager: stop-loss / take-profit evaluation and exits
    - PositionManagerConfig, ExitBasis, CycleResult, CycleOutcome

Usage:
    from sniper_bot.execution import PositionManager, TradeExecutor

    executor = TradeExecutor(chain, ExecutionConfig(...))
    manager = PositionManager(chain, position_repo, executor, config)
    await manager.run_cycle()
"""

from .trade_executor import ExecutionConfig, TradeExecutor, TradeResult
from .position_manager import (
    CycleOutcome,
    CycleResult,
    ExitBasis,
    PositionManager,
    PositionManagerConfig,
)

__all__ = [
    "ExecutionConfig",
    "TradeExecutor",
    "TradeResult",
    "CycleOutcome",
    "CycleResult",
    "ExitBasis",
    "PositionManager",
    "PositionManagerConfig",
]
