from fund_engine.executor.transaction import TransactionExecutor

__all__ = ["TransactionExecutor"]
