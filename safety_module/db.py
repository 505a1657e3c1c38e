"""
LevelDB store for engine snapshots.
"""
import logging
from contextlib import contextmanager
from typing import Optional

import plyvel

from safety_module.config import StorageConfig

logger = logging.getLogger(__name__)


class DB:
    def __init__(self, db_path: str, create_if_missing: bool = True,
                 write_buffer_size: int = 16 * 1024 * 1024,  # 16MB
                 max_open_files: int = 500):
        """
        Open (or create) the snapshot database.

        Args:
            db_path: Path to database directory
            create_if_missing: Create database if it doesn't exist
            write_buffer_size: Size of write buffer
            max_open_files: Maximum number of open files
        """
        self.path = db_path
        try:
            self._db = plyvel.DB(
                db_path,
                create_if_missing=create_if_missing,
                write_buffer_size=write_buffer_size,
                max_open_files=max_open_files,
            )
        except plyvel.Error as e:
            logger.error(f"Failed to open snapshot database at {db_path}: {e}")
            raise
        self._closed = False
        logger.info(f"Snapshot database opened at {db_path}")

    @classmethod
    def from_config(cls, config: StorageConfig) -> 'DB':
        return cls(
            config.path,
            write_buffer_size=config.write_buffer_size,
            max_open_files=config.max_open_files,
        )

    def _check_open(self):
        if self._closed:
            raise RuntimeError(f"Snapshot database {self.path} is closed")

    def get(self, key: bytes) -> Optional[bytes]:
        self._check_open()
        return self._db.get(key)

    @contextmanager
    def write_batch(self):
        """
        Group writes so a snapshot and its index entry land together.

        Example:
            with db.write_batch() as batch:
                batch.put(b'snapshot:sm:...', payload)
                batch.put(b'latest:sm', b'1700000000')
        """
        self._check_open()
        batch = self._db.write_batch()
        try:
            yield batch
            batch.write()
        except Exception as e:
            logger.error(f"Snapshot batch discarded: {e}")
            raise
        finally:
            batch.clear()

    def get_prefix(self, prefix: bytes, include_value: bool = True) -> list:
        """
        Entries under `prefix` in key order.

        Returns:
            List of (key, value) tuples, or of keys when include_value is False
        """
        self._check_open()
        return list(self._db.iterator(prefix=prefix, include_value=include_value))

    def close(self):
        if not self._closed:
            self._db.close()
            self._closed = True
            logger.info(f"Snapshot database {self.path} closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
