"""
Execution module.

Contains order execution against the futures exchange.

ARCHITECTURE:
    ReconciliationEngine (one pass per agent)
        │
        └── ExecutionCoordinator (single entry point for all orders)
                │
                ├── open_position   validate → leverage → market order → TP/SL legs
                ├── close_position  cancel orders → reduce-only market → verify flat
                └── clean_orphaned_orders
"""
from agent_mirror.execution.coordinator import (
    ExecutionCoordinator,
    protective_level_warnings,
    validate_order_params,
)

__all__ = [
    "ExecutionCoordinator",
    "protective_level_warnings",
    "validate_order_params",
]
