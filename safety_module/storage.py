"""
msgpack-encoded state snapshots on top of the LevelDB wrapper.
"""
import logging
from typing import Optional

import msgpack

from safety_module.db import DB

logger = logging.getLogger(__name__)

SNAPSHOT_PREFIX = b'snapshot:'
LATEST_PREFIX = b'latest:'

# Token amounts and WAD ratios routinely exceed 64 bits
BIG_INT_EXT = 1
INT64_MIN = -(2 ** 63)
UINT64_MAX = 2 ** 64 - 1


def _wrap_big_ints(obj):
    if isinstance(obj, bool):
        return obj
    if isinstance(obj, int):
        if obj < INT64_MIN or obj > UINT64_MAX:
            return msgpack.ExtType(BIG_INT_EXT, str(obj).encode())
        return obj
    if isinstance(obj, dict):
        return {k: _wrap_big_ints(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_wrap_big_ints(v) for v in obj]
    return obj


def _ext_hook(code: int, data: bytes):
    if code == BIG_INT_EXT:
        return int(data.decode())
    return msgpack.ExtType(code, data)


def encode_state(state: dict) -> bytes:
    return msgpack.packb(_wrap_big_ints(state), use_bin_type=True)


def decode_state(raw: bytes) -> dict:
    return msgpack.unpackb(raw, raw=False, ext_hook=_ext_hook, strict_map_key=False)


class StateStore:
    """Versioned snapshots of engine state, keyed by name and timestamp."""

    def __init__(self, db: DB):
        self.db = db

    @staticmethod
    def _snapshot_key(name: str, timestamp: int) -> bytes:
        return SNAPSHOT_PREFIX + name.encode() + b':' + f"{timestamp:020d}".encode()

    def save_snapshot(self, name: str, state: dict, timestamp: int):
        payload = encode_state(state)
        with self.db.write_batch() as batch:
            batch.put(self._snapshot_key(name, timestamp), payload)
            batch.put(LATEST_PREFIX + name.encode(), str(timestamp).encode())
        logger.info(f"Saved snapshot {name}@{timestamp} ({len(payload)} bytes)")

    def load_snapshot(self, name: str, timestamp: Optional[int] = None) -> Optional[dict]:
        """Load the snapshot at `timestamp`, or the latest one."""
        if timestamp is None:
            latest = self.db.get(LATEST_PREFIX + name.encode())
            if latest is None:
                return None
            timestamp = int(latest.decode())
        raw = self.db.get(self._snapshot_key(name, timestamp))
        if raw is None:
            return None
        return decode_state(raw)

    def list_snapshots(self, name: str) -> list:
        """Snapshot timestamps for `name`, oldest first."""
        prefix = SNAPSHOT_PREFIX + name.encode() + b':'
        keys = self.db.get_prefix(prefix, include_value=False)
        return [int(key[len(prefix):].decode()) for key in keys]

    def prune_snapshots(self, name: str, keep: int) -> int:
        """Delete all but the newest `keep` snapshots of `name`."""
        if keep < 1:
            raise ValueError("Must keep at least one snapshot")
        stale = self.list_snapshots(name)[:-keep]
        with self.db.write_batch() as batch:
            for timestamp in stale:
                batch.delete(self._snapshot_key(name, timestamp))
        if stale:
            logger.info(f"Pruned {len(stale)} snapshots of {name}")
        return len(stale)
