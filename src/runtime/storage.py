"""
Global Storage Engine.

Slots are keyed by (address, concrete struct descriptor) and hold at most one
resource. Committed state lives in GlobalStorage; each top-level invocation
works in a Transaction that stages its reads and writes and applies them
atomically on commit, or not at all.

Concurrency:
- every (address, type) key has its own lock; the registry lock only guards
  lock creation, so disjoint keys never contend
- every slot access in a transaction reads committed state under the key's lock
  and remembers the version it saw
- commit takes the locks of all touched keys in sorted order, validates the
  versions, applies the write set, and bumps the versions

Dynamic exclusivity for borrow_global / borrow_global_mut is enforced with the
same BorrowTable the static checker uses, over concrete global paths.
"""

import copy
import itertools
import threading
from contextlib import contextmanager
from typing import Any, Dict, Hashable, Iterator, List, Set, Tuple

from analysis.borrows import BorrowMode, BorrowTable, GlobalRoot, Path
from core.utils import debug
from move.types import StructType, is_concrete, normalize_address
from runtime.errors import BorrowConflictError, ExecutionError, MissingResource, ResourceAlreadyExists, StorageConflict
from runtime.values import Reference

SlotKey = Tuple[str, StructType]

# Staged marker for a slot known to be empty
_ABSENT = object()


def slot_key(address: Any, struct_type: StructType) -> SlotKey:
    if not isinstance(struct_type, StructType) or not is_concrete(struct_type):
        raise ExecutionError(f"Storage key must be a concrete struct type, got '{struct_type}'")
    return (normalize_address(address), struct_type)


def _sort_key(key: SlotKey) -> Tuple[int, str]:
    return (int(key[0], 16), str(key[1]))


class GlobalStorage:
    """Committed slots with per-key versions and locks."""

    def __init__(self):
        self._slots: Dict[SlotKey, Any] = {}
        self._versions: Dict[SlotKey, int] = {}
        self._locks: Dict[SlotKey, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self._tx_ids = itertools.count(1)

    def lock_for(self, key: SlotKey) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def read_committed(self, key: SlotKey) -> Tuple[Any, int]:
        """(value or _ABSENT, version) under the key's lock."""
        with self.lock_for(key):
            return self._slots.get(key, _ABSENT), self._versions.get(key, 0)

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def begin(self) -> "Transaction":
        return Transaction(self, next(self._tx_ids))

    @contextmanager
    def transaction(self) -> Iterator["Transaction"]:
        """Commit on normal exit, roll back on any exception."""
        tx = self.begin()
        try:
            yield tx
        except BaseException:
            tx.rollback()
            raise
        tx.commit()

    def _apply(self, tx: "Transaction") -> None:
        keys = sorted(tx.touched_keys(), key=_sort_key)
        locks = [self.lock_for(k) for k in keys]
        for lock in locks:
            lock.acquire()
        try:
            for key in keys:
                seen = tx.read_versions[key]
                current = self._versions.get(key, 0)
                if current != seen:
                    raise StorageConflict(
                        f"Slot {key[1]} at {key[0]} changed (version {seen} -> {current}) during transaction {tx.id}"
                    )
            for key in keys:
                if key not in tx.dirty:
                    continue
                value = tx.staged[key]
                if value is _ABSENT:
                    self._slots.pop(key, None)
                else:
                    self._slots[key] = value
                self._versions[key] = self._versions.get(key, 0) + 1
        finally:
            for lock in reversed(locks):
                lock.release()

    # -------------------------------------------------------------------------
    # Single-operation conveniences (each runs in its own transaction)
    # -------------------------------------------------------------------------

    def move_to(self, address: Any, struct_type: StructType, value: Any) -> None:
        with self.transaction() as tx:
            tx.move_to(address, struct_type, value)

    def move_from(self, address: Any, struct_type: StructType) -> Any:
        with self.transaction() as tx:
            return tx.move_from(address, struct_type)

    def exists(self, address: Any, struct_type: StructType) -> bool:
        value, _ = self.read_committed(slot_key(address, struct_type))
        return value is not _ABSENT

    def get(self, address: Any, struct_type: StructType) -> Any:
        """Snapshot copy of a committed resource (MissingResource if absent)."""
        key = slot_key(address, struct_type)
        value, _ = self.read_committed(key)
        if value is _ABSENT:
            raise MissingResource(key[0], struct_type)
        return copy.deepcopy(value)

    def resources_at(self, address: Any) -> List[StructType]:
        addr = normalize_address(address)
        with self._registry_lock:
            keys = list(self._slots)
        return sorted((t for a, t in keys if a == addr), key=str)

    def __len__(self) -> int:
        return len(self._slots)


class Transaction:
    """
    Staged view of global storage for one top-level invocation.

    The first access to a key records the committed version; later accesses
    use the staged value. Values are copied before the first mutation so
    committed objects are never modified in place.
    """

    def __init__(self, storage: GlobalStorage, tx_id: int):
        self.storage = storage
        self.id = tx_id
        self.staged: Dict[SlotKey, Any] = {}
        self.read_versions: Dict[SlotKey, int] = {}
        self.dirty: Set[SlotKey] = set()
        self.borrows = BorrowTable()
        self.closed = False

    def touched_keys(self) -> Set[SlotKey]:
        return set(self.read_versions)

    def _load(self, key: SlotKey) -> Any:
        if key not in self.read_versions:
            value, version = self.storage.read_committed(key)
            self.staged[key] = value
            self.read_versions[key] = version
        return self.staged[key]

    def _own(self, key: SlotKey) -> None:
        """Stage a private copy before the first mutation of key."""
        if key not in self.dirty:
            value = self.staged[key]
            if value is not _ABSENT:
                self.staged[key] = copy.deepcopy(value)
            self.dirty.add(key)

    def _check_open(self) -> None:
        if self.closed:
            raise ExecutionError(f"Transaction {self.id} is already closed")

    def _path(self, key: SlotKey) -> Path:
        return Path(GlobalRoot(key[1], key[0]))

    def _require_unborrowed(self, key: SlotKey, what: str) -> None:
        live = self.borrows.live_on(self._path(key))
        if live:
            raise BorrowConflictError(f"Cannot {what} {key[1]} at {key[0]}: {live[0]} is still live")

    # -------------------------------------------------------------------------
    # Storage operations
    # -------------------------------------------------------------------------

    def move_to(self, address: Any, struct_type: StructType, value: Any) -> None:
        self._check_open()
        key = slot_key(address, struct_type)
        if self._load(key) is not _ABSENT:
            raise ResourceAlreadyExists(key[0], struct_type)
        self._require_unborrowed(key, "move_to")
        self.dirty.add(key)
        self.staged[key] = value
        debug(f"[tx {self.id}] move_to {struct_type} at {key[0]}")

    def move_from(self, address: Any, struct_type: StructType) -> Any:
        self._check_open()
        key = slot_key(address, struct_type)
        value = self._load(key)
        if value is _ABSENT:
            raise MissingResource(key[0], struct_type)
        self._require_unborrowed(key, "move_from")
        self._own(key)
        value = self.staged[key]
        self.staged[key] = _ABSENT
        debug(f"[tx {self.id}] move_from {struct_type} at {key[0]}")
        return value

    def exists(self, address: Any, struct_type: StructType) -> bool:
        self._check_open()
        return self._load(slot_key(address, struct_type)) is not _ABSENT

    def borrow_global(self, address: Any, struct_type: StructType, holder: Hashable = None) -> Reference:
        return self._borrow(address, struct_type, False, holder)

    def borrow_global_mut(self, address: Any, struct_type: StructType, holder: Hashable = None) -> Reference:
        return self._borrow(address, struct_type, True, holder)

    def _borrow(self, address: Any, struct_type: StructType, mutable: bool, holder: Hashable) -> Reference:
        self._check_open()
        key = slot_key(address, struct_type)
        if self._load(key) is _ABSENT:
            raise MissingResource(key[0], struct_type)
        mode = BorrowMode.EXCLUSIVE if mutable else BorrowMode.SHARED
        holder = holder if holder is not None else object()
        loan, conflicting = self.borrows.request(self._path(key), mode, holder)
        if loan is None:
            raise BorrowConflictError(
                f"Cannot {'mutably ' if mutable else ''}borrow {struct_type} at {key[0]}: {conflicting[0]} is still live"
            )
        if mutable:
            self._own(key)
        return GlobalRef(self, key, mutable, loan.id, holder)

    def release(self, loan_id: int) -> None:
        self.borrows.release(loan_id)

    # -------------------------------------------------------------------------
    # Completion
    # -------------------------------------------------------------------------

    def commit(self) -> None:
        self._check_open()
        self.closed = True
        self.borrows = BorrowTable()
        self.storage._apply(self)
        debug(f"[tx {self.id}] committed {len(self.dirty)} write(s)")

    def rollback(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.staged.clear()
        self.dirty.clear()
        self.borrows = BorrowTable()
        debug(f"[tx {self.id}] rolled back")


class GlobalRef(Reference):
    """Reference into a transaction's staged slot; release() ends the borrow."""

    __slots__ = ("tx", "loan_id", "holder")

    def __init__(self, tx: Transaction, key: SlotKey, mutable: bool, loan_id: int, holder: Hashable):
        super().__init__(tx.staged, key, mutable, (loan_id,))
        self.tx = tx
        self.loan_id = loan_id
        self.holder = holder

    def release(self) -> None:
        self.tx.borrows.drop_holder(self.holder, [self.loan_id])

    def __enter__(self) -> "GlobalRef":
        return self

    def __exit__(self, *exc) -> None:
        self.release()
