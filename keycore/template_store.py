"""
Template Store Module

Persistence capability for key templates. The core only depends on the
abstract TemplateStore {save, load, load_all, delete}; two implementations
are provided:

- InMemoryTemplateStore: records kept in a dict (tests, ephemeral hosts).
- TemplateManager: file-backed store.
    - .npz files: one compressed file per key holding the feature vectors
      and the JSON metadata
    - SQLite database: index of enrolled keys for efficient listing

Every implementation raises StorageFailure for I/O problems, so callers can
tell "not found" (None / False) apart from "could not read/write".

Usage:
    from keycore.template_store import TemplateManager

    manager = TemplateManager(storage_dir="storage/key_templates",
                              db_path="storage/keys.sqlite")
    manager.save(template)
    loaded = manager.load(template.id)
    manager.delete(template.id)
"""

import json
import logging
import os
import sqlite3
import threading
import zipfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np

from keycore.errors import StorageFailure
from keycore.key_template import KeyTemplate, parse_timestamp

logger = logging.getLogger(__name__)

TEMPLATE_FORMAT_VERSION = "1.0"


class TemplateStore(ABC):
    """Key-value capability for KeyTemplate records, keyed by template id."""

    @abstractmethod
    def save(self, template: KeyTemplate) -> None:
        """
        Persist a template, replacing any record with the same id.

        Raises:
            StorageFailure: If the record could not be written.
        """

    @abstractmethod
    def load(self, key_id: str) -> Optional[KeyTemplate]:
        """
        Load one template.

        Returns:
            The template, or None if no record exists for this id.

        Raises:
            StorageFailure: If the record exists but cannot be read.
        """

    @abstractmethod
    def load_all(self) -> List[KeyTemplate]:
        """
        Load every readable template. Unreadable records are skipped.

        Raises:
            StorageFailure: If the store itself cannot be enumerated.
        """

    @abstractmethod
    def delete(self, key_id: str) -> bool:
        """
        Remove a template.

        Returns:
            True if a record was removed, False if none existed.

        Raises:
            StorageFailure: If the record could not be removed.
        """


class InMemoryTemplateStore(TemplateStore):
    """
    Template store backed by a dict of serialized records.

    Templates go through their record form on the way in and out, so this
    store exercises the same serialization as a persistent one.
    """

    def __init__(self):
        self._records: Dict[str, str] = {}
        self._lock = threading.Lock()

    def save(self, template: KeyTemplate) -> None:
        with self._lock:
            self._records[template.id] = template.to_json()
        logger.debug(f"Stored template {template.id} in memory")

    def load(self, key_id: str) -> Optional[KeyTemplate]:
        with self._lock:
            payload = self._records.get(key_id)
        if payload is None:
            return None
        try:
            return KeyTemplate.from_json(payload)
        except ValueError as e:
            raise StorageFailure("load", key_id, str(e)) from e

    def load_all(self) -> List[KeyTemplate]:
        with self._lock:
            key_ids = list(self._records)
        templates = []
        for key_id in key_ids:
            try:
                template = self.load(key_id)
            except StorageFailure as e:
                logger.warning(f"Skipping unreadable template: {e}")
                continue
            if template is not None:
                templates.append(template)
        return templates

    def delete(self, key_id: str) -> bool:
        with self._lock:
            return self._records.pop(key_id, None) is not None

    def __len__(self) -> int:
        return len(self._records)


class TemplateManager(TemplateStore):
    """
    File-backed template store.

    Templates are stored in two places:
    1. Filesystem (.npz files): the feature vectors and metadata
    2. SQLite database: key index for listing and statistics

    Attributes:
        storage_dir: Directory where .npz template files are stored.
        db_path: Path to the SQLite database file.
    """

    def __init__(self, storage_dir: str, db_path: str):
        """
        Initialize the TemplateManager.

        Creates the storage directory and database if they don't exist.

        Args:
            storage_dir: Path to directory for storing .npz files.
            db_path: Path to SQLite database file.

        Raises:
            StorageFailure: If the directories or schema cannot be created.
        """
        self.storage_dir = Path(storage_dir)
        self.db_path = Path(db_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()

        try:
            self.storage_dir.mkdir(parents=True, exist_ok=True)
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._init_database()
        except (OSError, sqlite3.Error) as e:
            logger.error(f"Cannot initialize template storage: {e}")
            raise StorageFailure("init", message=str(e)) from e

        logger.info(f"TemplateManager initialized: storage={self.storage_dir}, db={self.db_path}")

    def _get_connection(self) -> sqlite3.Connection:
        """Get or lazily create the SQLite connection (Row factory)."""
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_database(self) -> None:
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS key_templates (
                key_id TEXT PRIMARY KEY,
                template_path TEXT NOT NULL,
                enrolled_at TEXT NOT NULL,
                n_vectors INTEGER,
                vector_dim INTEGER
            )
        """)
        conn.commit()
        logger.debug("Database schema initialized")

    def _get_template_path(self, key_id: str) -> Path:
        return self.storage_dir / f"{key_id}.npz"

    # ------------------------------------------------------------------
    # TemplateStore
    # ------------------------------------------------------------------

    def save(self, template: KeyTemplate) -> None:
        """
        Save a template to disk and register it in the database.

        The .npz file contains one float32 array per feature vector
        ("vector_0000", ...) plus a JSON "metadata" string. The file is
        written to a temporary name first and moved into place. When a
        template with the same id exists, its file is kept aside until the
        index row is committed and put back if the save fails, so the file
        on disk always matches the index.
        """
        metadata = {
            "id": template.id,
            "enrolledDate": template.enrolled_at.isoformat(),
            "n_vectors": template.n_vectors,
            "template_version": TEMPLATE_FORMAT_VERSION,
        }
        arrays = {
            f"vector_{i:04d}": vector for i, vector in enumerate(template.feature_vectors)
        }

        template_path = self._get_template_path(template.id)
        temp_path = template_path.with_suffix(".npz.tmp")
        backup_path = template_path.with_suffix(".npz.bak")

        with self._lock:
            moved_aside = False
            replaced = False
            try:
                with open(temp_path, "wb") as f:
                    np.savez_compressed(f, metadata=json.dumps(metadata), **arrays)
                if template_path.exists():
                    os.replace(template_path, backup_path)
                    moved_aside = True
                os.replace(temp_path, template_path)
                replaced = True

                conn = self._get_connection()
                conn.execute("""
                    INSERT OR REPLACE INTO key_templates
                    (key_id, template_path, enrolled_at, n_vectors, vector_dim)
                    VALUES (?, ?, ?, ?, ?)
                """, (
                    template.id,
                    str(template_path),
                    metadata["enrolledDate"],
                    template.n_vectors,
                    template.vector_dim,
                ))
                conn.commit()
            except (OSError, sqlite3.Error) as e:
                logger.error(f"Failed to save template {template.id}: {e}")
                self._undo_save(template_path, temp_path, backup_path, moved_aside, replaced)
                raise StorageFailure("save", template.id, str(e)) from e

            if moved_aside:
                backup_path.unlink(missing_ok=True)

        logger.info(f"Saved template {template.id} ({template.n_vectors} vectors)")

    def _undo_save(
        self,
        template_path: Path,
        temp_path: Path,
        backup_path: Path,
        moved_aside: bool,
        replaced: bool,
    ) -> None:
        """Roll the index back and restore the previous template file."""
        try:
            if self._conn is not None:
                self._conn.rollback()
            temp_path.unlink(missing_ok=True)
            if replaced:
                template_path.unlink(missing_ok=True)
            if moved_aside:
                os.replace(backup_path, template_path)
        except (OSError, sqlite3.Error) as e:
            logger.error(f"Could not restore previous template {template_path}: {e}")

    def load(self, key_id: str) -> Optional[KeyTemplate]:
        with self._lock:
            try:
                row = self._get_connection().execute(
                    "SELECT template_path FROM key_templates WHERE key_id = ?", (key_id,)
                ).fetchone()
            except sqlite3.Error as e:
                raise StorageFailure("load", key_id, str(e)) from e

        if row is None:
            return None

        return self._read_template_file(key_id, Path(row["template_path"]))

    def _read_template_file(self, key_id: str, template_path: Path) -> KeyTemplate:
        if not template_path.exists():
            logger.warning(f"Template file missing for key {key_id}: {template_path}")
            raise StorageFailure("load", key_id, f"missing file {template_path}")

        try:
            with np.load(str(template_path), allow_pickle=False) as data:
                metadata = json.loads(str(data["metadata"]))
                if not isinstance(metadata, dict):
                    raise ValueError("template metadata must be a JSON object")
                vector_names = sorted(name for name in data.files if name.startswith("vector_"))
                vectors = [data[name] for name in vector_names]

            template = KeyTemplate(
                id=metadata.get("id", key_id),
                enrolled_at=parse_timestamp(metadata["enrolledDate"]),
                feature_vectors=tuple(vectors),
            )
        except (OSError, KeyError, TypeError, ValueError, zipfile.BadZipFile) as e:
            logger.error(f"Failed to load template {key_id}: {e}")
            raise StorageFailure("load", key_id, str(e)) from e

        logger.debug(f"Loaded template {key_id} ({template.n_vectors} vectors)")
        return template

    def load_all(self) -> List[KeyTemplate]:
        """Load all enrolled templates, skipping unreadable ones with a warning."""
        with self._lock:
            try:
                rows = self._get_connection().execute(
                    "SELECT key_id, template_path FROM key_templates ORDER BY enrolled_at"
                ).fetchall()
            except sqlite3.Error as e:
                raise StorageFailure("load_all", message=str(e)) from e

        templates = []
        for row in rows:
            try:
                templates.append(self._read_template_file(row["key_id"], Path(row["template_path"])))
            except StorageFailure as e:
                logger.warning(f"Skipping unreadable template: {e}")

        logger.info(f"Loaded {len(templates)} templates")
        return templates

    def delete(self, key_id: str) -> bool:
        """Delete a key's template from both database and filesystem."""
        with self._lock:
            try:
                conn = self._get_connection()
                row = conn.execute(
                    "SELECT template_path FROM key_templates WHERE key_id = ?", (key_id,)
                ).fetchone()
                if row is None:
                    logger.warning(f"Cannot delete: key {key_id} not found")
                    return False

                template_path = Path(row["template_path"])
                template_path.unlink(missing_ok=True)

                conn.execute("DELETE FROM key_templates WHERE key_id = ?", (key_id,))
                conn.commit()
            except (OSError, sqlite3.Error) as e:
                logger.error(f"Failed to delete template {key_id}: {e}")
                raise StorageFailure("delete", key_id, str(e)) from e

        logger.info(f"Deleted template for key {key_id}")
        return True

    # ------------------------------------------------------------------
    # Index queries
    # ------------------------------------------------------------------

    def list_keys(self) -> List[Dict[str, Any]]:
        """
        List all enrolled keys, newest first.

        Returns:
            List of dictionaries with key_id, enrolled_at, n_vectors, vector_dim.
        """
        with self._lock:
            rows = self._get_connection().execute("""
                SELECT key_id, enrolled_at, n_vectors, vector_dim
                FROM key_templates
                ORDER BY enrolled_at DESC
            """).fetchall()

        return [
            {
                "key_id": row["key_id"],
                "enrolled_at": row["enrolled_at"],
                "n_vectors": row["n_vectors"],
                "vector_dim": row["vector_dim"],
            }
            for row in rows
        ]

    def key_exists(self, key_id: str) -> bool:
        with self._lock:
            row = self._get_connection().execute(
                "SELECT 1 FROM key_templates WHERE key_id = ?", (key_id,)
            ).fetchone()
        return row is not None

    def get_stats(self) -> Dict[str, Any]:
        """Number of enrolled keys and the total number of stored vectors."""
        with self._lock:
            row = self._get_connection().execute(
                "SELECT COUNT(*) AS count, SUM(n_vectors) AS total_vectors FROM key_templates"
            ).fetchone()

        return {
            "total_keys": row["count"] or 0,
            "total_vectors": row["total_vectors"] or 0,
        }

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            logger.debug("Database connection closed")

    def __del__(self):
        self.close()


# Singleton instance for the manager
_manager_instance: Optional[TemplateManager] = None


def get_template_manager(
    storage_dir: Optional[str] = None,
    db_path: Optional[str] = None,
) -> TemplateManager:
    """
    Get or create the shared TemplateManager instance.

    Args:
        storage_dir: Template directory. If None, uses the storage config.
        db_path: SQLite database path. If None, uses the storage config.

    Returns:
        The shared TemplateManager instance.
    """
    global _manager_instance

    if _manager_instance is None:
        if storage_dir is None or db_path is None:
            from keycore.config import get_storage_config, get_project_root

            storage_config = get_storage_config()
            project_root = get_project_root()

            if storage_dir is None:
                storage_dir = str(project_root / storage_config["templates_dir"])
            if db_path is None:
                db_path = str(project_root / storage_config["db_path"])

        _manager_instance = TemplateManager(storage_dir, db_path)

    return _manager_instance
