# app/x402/nonce_store.py
"""
Used-nonce storage for x402 replay protection.

Every EIP-3009 nonce accepted by the gateway is recorded here and never
removed. Authorizations also carry their own expiry window, so the set
only grows by one entry per paid request.

The file-backed store keeps the full set in memory and rewrites a JSON
array on every add (temp file + rename), so a restart reloads exactly the
nonces that were acknowledged before the crash.
"""
import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Iterable, Optional, Set, Union

from app.core.config import settings

logger = logging.getLogger(__name__)


class NonceStoreError(Exception):
    """Raised when the persisted nonce set cannot be read or written."""


def normalize_nonce(nonce: str) -> str:
    """Canonical form used as the store key: lowercase with 0x prefix."""
    nonce = nonce.strip().lower()
    if not nonce.startswith("0x"):
        nonce = "0x" + nonce
    return nonce


class NonceStore:
    """
    In-memory set of used nonces.

    Thread-safe. ``add_if_absent`` is the atomic check-and-record
    primitive; ``has``/``add`` exist for callers that hold their own lock.
    """

    def __init__(self, nonces: Optional[Iterable[str]] = None):
        self._nonces: Set[str] = {normalize_nonce(n) for n in (nonces or [])}
        self._lock = threading.Lock()

    def has(self, nonce: str) -> bool:
        with self._lock:
            return normalize_nonce(nonce) in self._nonces

    def add(self, nonce: str) -> None:
        self.add_if_absent(nonce)

    def add_if_absent(self, nonce: str) -> bool:
        """
        Record ``nonce`` unless it is already present.

        Returns:
            True if the nonce was newly recorded, False if it was already used
        """
        key = normalize_nonce(nonce)
        with self._lock:
            if key in self._nonces:
                return False
            self._nonces.add(key)
            try:
                self._persist()
            except Exception:
                self._nonces.discard(key)
                raise
            return True

    def _persist(self) -> None:
        """Hook for durable subclasses; called with the lock held."""

    def __contains__(self, nonce: str) -> bool:
        return self.has(nonce)

    def __len__(self) -> int:
        with self._lock:
            return len(self._nonces)


class FileNonceStore(NonceStore):
    """Nonce store persisted as a JSON array at ``path``."""

    def __init__(self, path: Union[str, Path]):
        self._path = Path(path)
        super().__init__(self._load())
        logger.info(f"x402: Loaded {len(self._nonces)} used nonces from {self._path}")

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> Set[str]:
        if not self._path.exists():
            return set()

        try:
            raw = self._path.read_text(encoding="utf-8")
            data = json.loads(raw) if raw.strip() else []
        except (OSError, json.JSONDecodeError) as e:
            # Starting empty here would reopen every recorded nonce for replay
            raise NonceStoreError(f"Cannot read nonce store {self._path}: {e}") from e

        if not isinstance(data, list):
            raise NonceStoreError(f"Nonce store {self._path} must contain a JSON array")

        return {normalize_nonce(n) for n in data if isinstance(n, str)}

    def _persist(self) -> None:
        directory = self._path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=directory, prefix=f".{self._path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(sorted(self._nonces), f)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, self._path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except OSError as e:
            logger.error(f"x402: Failed to persist nonce store {self._path}: {e}")
            raise NonceStoreError(f"Cannot write nonce store {self._path}: {e}") from e


# Global nonce store instance
_nonce_store: Optional[NonceStore] = None
_nonce_store_lock = threading.Lock()


def get_nonce_store(path: Optional[Union[str, Path]] = None) -> NonceStore:
    """
    Get the global file-backed nonce store, loading it on first use.

    Args:
        path: Store location. If None, uses X402_NONCE_STORE_PATH.
    """
    global _nonce_store

    if _nonce_store is None:
        with _nonce_store_lock:
            if _nonce_store is None:
                if path is None:
                    path = settings.X402_NONCE_STORE_PATH
                _nonce_store = FileNonceStore(path)

    return _nonce_store


def reset_nonce_store() -> None:
    """Drop the global nonce store (useful for testing)."""
    global _nonce_store
    with _nonce_store_lock:
        _nonce_store = None
