"""
BitVM Bridge SDK - Graph Store

Shared key-value store that all committee members read and write. Values are
JSON-compatible. Protocol records (nonces, partial signatures, signatures,
confirmations, terminal outcome) are append-only: put_once() accepts an
identical rewrite as a no-op and rejects a different value.

Key layout:
  graph/<graph_id>                               graph definition
  round/<graph_id>/<tx>/<input>                  current session round
  nonce/<graph_id>/<tx>/<input>/r<round>/<pk>    public nonce
  psig/<graph_id>/<tx>/<input>/r<round>/<pk>     partial signature
  sig/<graph_id>/<tx>/<input>/r<round>           aggregated signature
  xsig/<graph_id>/<tx>/<input>                   depositor/operator signature
  confirm/<graph_id>/<tx|funding>                confirmation height
  outcome/<graph_id>                             terminal outcome
  fraud/<graph_id>                               fraud witness
  assertion/<graph_id>                           operator assertion
  l2/<graph_id>                                  L2 withdrawal confirmation
  broadcast/<graph_id>/<tx>                      last local broadcast
"""

import fcntl
import json
import logging
import os
import tempfile
import threading
import time
from contextlib import contextmanager
from typing import Any, Dict, Optional

from .errors import DuplicateSubmissionConflict, StoreError


log = logging.getLogger(__name__)


# =============================================================================
# KEYS
# =============================================================================

def graph_key(graph_id: str) -> str:
    return f"graph/{graph_id}"


def round_key(graph_id: str, input_key: str) -> str:
    return f"round/{graph_id}/{input_key}"


def nonce_key(graph_id: str, input_key: str, session_round: int, pubkey: str) -> str:
    return f"nonce/{graph_id}/{input_key}/r{session_round}/{pubkey}"


def psig_key(graph_id: str, input_key: str, session_round: int, pubkey: str) -> str:
    return f"psig/{graph_id}/{input_key}/r{session_round}/{pubkey}"


def sig_key(graph_id: str, input_key: str, session_round: int) -> str:
    return f"sig/{graph_id}/{input_key}/r{session_round}"


def xsig_key(graph_id: str, input_key: str) -> str:
    return f"xsig/{graph_id}/{input_key}"


def confirm_key(graph_id: str, name: str) -> str:
    return f"confirm/{graph_id}/{name}"


def outcome_key(graph_id: str) -> str:
    return f"outcome/{graph_id}"


def fraud_key(graph_id: str) -> str:
    return f"fraud/{graph_id}"


def assertion_key(graph_id: str) -> str:
    return f"assertion/{graph_id}"


def l2_key(graph_id: str) -> str:
    return f"l2/{graph_id}"


def broadcast_key(graph_id: str, tx_name: str) -> str:
    return f"broadcast/{graph_id}/{tx_name}"


# =============================================================================
# STORES
# =============================================================================

class GraphStore:
    """Store interface. Subclasses implement _read / _write."""

    def __init__(self):
        self._lock = threading.RLock()

    def _read(self, key: str) -> Optional[Any]:
        raise NotImplementedError

    def _write(self, key: str, value: Any):
        raise NotImplementedError

    def _keys(self):
        raise NotImplementedError

    @contextmanager
    def _locked(self):
        with self._lock:
            yield

    def get(self, key: str, default: Any = None) -> Any:
        with self._locked():
            value = self._read(key)
        return default if value is None else value

    def put(self, key: str, value: Any):
        """Overwrite. Only for mutable records (session round, broadcast log)."""
        with self._locked():
            self._write(key, value)

    def put_once(self, key: str, value: Any) -> bool:
        """
        Append-only write.

        Returns:
            True if written, False if the identical value was already there

        Raises:
            DuplicateSubmissionConflict: a different value is already stored
        """
        with self._locked():
            existing = self._read(key)
            if existing is None:
                self._write(key, value)
                return True
            if existing == value:
                return False
            raise DuplicateSubmissionConflict(key)

    def list_prefix(self, prefix: str) -> Dict[str, Any]:
        with self._locked():
            return {k: self._read(k) for k in sorted(self._keys()) if k.startswith(prefix)}

    def exists(self, key: str) -> bool:
        return self.get(key) is not None


class MemoryStore(GraphStore):
    """In-process store (tests, single-node tooling)."""

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Any] = {}

    def _read(self, key: str) -> Optional[Any]:
        value = self._data.get(key)
        # Hand out copies so callers cannot mutate stored records
        return json.loads(json.dumps(value)) if value is not None else None

    def _write(self, key: str, value: Any):
        self._data[key] = json.loads(json.dumps(value))

    def _keys(self):
        return list(self._data)


class JsonFileStore(MemoryStore):
    """
    Store persisted to a JSON file shared by several local processes.

    Every operation holds an exclusive flock on `<path>.lock` and re-reads the
    file first, so a read-modify-write (put_once) is atomic across processes.
    Writes go to a unique temp file in the same directory, then os.replace().
    """

    def __init__(self, path: str):
        super().__init__()
        self.path = os.path.expanduser(path)
        self.lock_path = f"{self.path}.lock"
        self._lock_fd: Optional[int] = None
        self._depth = 0
        with self._locked():
            pass

    @contextmanager
    def _locked(self):
        with self._lock:
            if self._depth == 0:
                self._acquire()
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
                if self._depth == 0:
                    self._release()

    def _acquire(self):
        try:
            fd = os.open(self.lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise StoreError(f"failed to open lock file {self.lock_path}: {e}")
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
        except OSError as e:
            os.close(fd)
            raise StoreError(f"failed to lock {self.lock_path}: {e}")
        self._lock_fd = fd
        try:
            self._load()
        except StoreError:
            self._release()
            raise

    def _release(self):
        fd, self._lock_fd = self._lock_fd, None
        if fd is None:
            return
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def _load(self):
        if not os.path.exists(self.path):
            self._data = {}
            return
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StoreError(f"failed to load {self.path}: {e}")
        self._data = data.get("records", {})

    def _save(self):
        data = {
            "version": "1.0",
            "updated_ts": int(time.time()),
            "records": self._data,
        }
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            fd, tmp = tempfile.mkstemp(dir=directory, prefix=f".{os.path.basename(self.path)}.",
                                       suffix=".tmp")
        except OSError as e:
            raise StoreError(f"failed to save {self.path}: {e}")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(data, f, indent=2, sort_keys=True)
            os.replace(tmp, self.path)
        except OSError as e:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise StoreError(f"failed to save {self.path}: {e}")

    def _write(self, key: str, value: Any):
        super()._write(key, value)
        self._save()
        log.debug(f"store write {key}")
