"""
Runtime (execution) errors.

Every failure during `execute` is an ExecutionError. The invocation's storage
mutations are rolled back before the error reaches the caller.
"""

from typing import Optional

# Abort code for integer overflow/underflow, division by zero and out-of-range casts
ARITHMETIC_ERROR = 4017
# Abort code for out-of-bounds vector indexing and pop_back on an empty vector
VECTOR_INDEX_OUT_OF_BOUNDS = 0x20000


class ExecutionError(Exception):
    """Base class for failed executions."""

    pass


class ResourceAlreadyExists(ExecutionError):
    def __init__(self, address: str, struct_type):
        self.address = address
        self.struct_type = struct_type
        super().__init__(f"Resource {struct_type} already exists at {address}")


class MissingResource(ExecutionError):
    def __init__(self, address: str, struct_type):
        self.address = address
        self.struct_type = struct_type
        super().__init__(f"No resource {struct_type} at {address}")


class AbortError(ExecutionError):
    """Explicit abort, failed assert, or arithmetic failure. Carries the numeric code."""

    def __init__(self, code: int, location: Optional[str] = None):
        self.code = code
        self.location = location
        where = f" in {location}" if location else ""
        super().__init__(f"Aborted with code {code}{where}")


class BorrowConflictError(ExecutionError):
    """Dynamic exclusivity failure on a storage slot."""

    pass


class StorageConflict(ExecutionError):
    """A concurrent transaction committed a slot this transaction read."""

    pass


class CallDepthExceeded(ExecutionError):
    def __init__(self, depth: int):
        self.depth = depth
        super().__init__(f"Call depth limit of {depth} exceeded")
