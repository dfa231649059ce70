"""
File adapters for the import pipeline.
"""

from .batch_reader import BatchReadResult, RowError, count_rows, iter_batches, read_batch

__all__ = ["BatchReadResult", "RowError", "count_rows", "iter_batches", "read_batch"]
