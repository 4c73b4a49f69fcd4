from fund_engine.distribution.engine import (
    DistributionEngine,
    DistributionPersistenceError,
    chunk,
    compute_distribution,
    format_amount,
)

__all__ = [
    "DistributionEngine",
    "DistributionPersistenceError",
    "chunk",
    "compute_distribution",
    "format_amount",
]
