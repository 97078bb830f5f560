"""
Runtime: values, global storage with transactions, the interpreter and the
test-entry runner.
"""

from runtime.errors import (
    ARITHMETIC_ERROR,
    AbortError,
    BorrowConflictError,
    CallDepthExceeded,
    ExecutionError,
    MissingResource,
    ResourceAlreadyExists,
    StorageConflict,
)
from runtime.interpreter import execute
from runtime.storage import GlobalStorage, Transaction
from runtime.testing import TestResult, run_tests
from runtime.values import Signer, StructValue

__all__ = [
    "ARITHMETIC_ERROR",
    "AbortError",
    "BorrowConflictError",
    "CallDepthExceeded",
    "ExecutionError",
    "MissingResource",
    "ResourceAlreadyExists",
    "StorageConflict",
    "execute",
    "GlobalStorage",
    "Transaction",
    "TestResult",
    "run_tests",
    "Signer",
    "StructValue",
]
