"""DuckDB Encounter Store.

This adapter implements the LocalStorePort contract: a persistent key-value
store of offline envelopes, keyed by encounter identifier, that survives
process restarts and network loss.

Security Impact:
    - Envelope bodies are encrypted at rest when an EncryptionService is supplied
    - Bookkeeping columns never contain PHI, so status queries need no decryption
    - A failed write is reported as a LocalWriteError failure, never swallowed

Architecture:
    - Implements LocalStorePort (Hexagonal Architecture)
    - Isolated from domain core - only depends on ports and models
    - Plain overwrite-by-key (INSERT OR REPLACE), last write wins
    - Re-keying writes the new key and retires the old one in one transaction
    - Local id -> server id assignments persist in reconciled_ids across restarts
"""

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import duckdb
from pydantic import ValidationError as PydanticValidationError

from encounter_capture.domain.envelope import OfflineEnvelope
from encounter_capture.domain.enums import OfflineStatus
from encounter_capture.domain.ports import (
    LocalStorePort,
    LocalWriteError,
    Result,
    StorageError,
)
from encounter_capture.infrastructure.config_manager import StoreConfig
from encounter_capture.infrastructure.encryption.encryption_service import EncryptionService

logger = logging.getLogger(__name__)

# A queued submission stays pending until the server accepts it, even when
# a later draft save has been confirmed.
_PENDING_FILTER = (
    "offline_status <> ? AND superseded_by IS NULL "
    "AND (offline_status = ? OR server_synced_at IS NULL OR saved_at > server_synced_at)"
)
_PENDING_PARAMS = [OfflineStatus.SYNCED.value, OfflineStatus.PENDING_SUBMISSION.value]


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class DuckDBEncounterStore(LocalStorePort):
    """DuckDB implementation of LocalStorePort for offline envelopes.

    Parameters:
        store_config: StoreConfig from configuration manager (preferred)
        db_path: Path to DuckDB database file (or ':memory:' for in-memory)
        encryption: Optional service used to encrypt envelope bodies

    Example Usage:
        ```python
        store = DuckDBEncounterStore(db_path="data/encounters.duckdb")
        result = store.save_offline(envelope.key, envelope)
        if result.is_failure():
            ...  # hard failure: nothing was persisted
        store.count()
        ```
    """

    def __init__(
        self,
        store_config: Optional[StoreConfig] = None,
        db_path: Optional[str] = None,
        encryption: Optional[EncryptionService] = None,
    ):
        """Initialize DuckDB store.

        Raises:
            StorageError: If the database directory does not exist

        Note:
            If both store_config and db_path are provided, store_config takes precedence.
            If neither is provided, defaults to in-memory database.
        """
        if store_config:
            self.db_path = store_config.db_path or ":memory:"
        elif db_path:
            self.db_path = db_path
        else:
            self.db_path = ":memory:"

        self.encryption = encryption
        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._initialized = False

        if self.db_path != ":memory:":
            db_path_obj = Path(self.db_path)
            if not db_path_obj.parent.exists():
                raise StorageError(
                    f"Database directory does not exist: {db_path_obj.parent}",
                    operation="__init__"
                )

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create DuckDB connection (created lazily, then reused)."""
        if self._connection is None:
            try:
                self._connection = duckdb.connect(self.db_path)
                logger.info(f"Connected to DuckDB database: {self.db_path}")
            except duckdb.Error as e:
                raise StorageError(
                    f"Failed to connect to DuckDB: {str(e)}",
                    operation="connect",
                    details={"db_path": self.db_path}
                ) from e
        return self._connection

    def initialize_schema(self) -> Result[None]:
        """Create the offline_envelopes and reconciled_ids tables.

        Returns:
            Result[None]: Success or failure result
        """
        try:
            conn = self._get_connection()
            conn.execute("""
                CREATE TABLE IF NOT EXISTS offline_envelopes (
                    storage_key VARCHAR PRIMARY KEY,
                    local_id VARCHAR NOT NULL,
                    server_id VARCHAR,
                    offline_status VARCHAR NOT NULL,
                    attempted_submit BOOLEAN NOT NULL,
                    saved_at TIMESTAMP NOT NULL,
                    submitted_at TIMESTAMP,
                    server_synced_at TIMESTAMP,
                    sync_attempts INTEGER NOT NULL DEFAULT 0,
                    last_error VARCHAR,
                    superseded_by VARCHAR,
                    body_encrypted BOOLEAN NOT NULL,
                    body_hash VARCHAR NOT NULL,
                    body BLOB NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS reconciled_ids (
                    local_key VARCHAR PRIMARY KEY,
                    server_key VARCHAR NOT NULL,
                    reconciled_at TIMESTAMP NOT NULL
                )
            """)

            self._initialized = True
            logger.info("Offline envelope schema initialized successfully")
            return Result.success_result(None)

        except (duckdb.Error, StorageError) as e:
            error_msg = f"Failed to initialize schema: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                StorageError(error_msg, operation="initialize_schema"),
                error_type="StorageError"
            )

    def _ensure_schema(self) -> None:
        if not self._initialized:
            init_result = self.initialize_schema()
            if init_result.is_failure():
                raise StorageError(init_result.error, operation="initialize_schema")

    def _encode(self, envelope: OfflineEnvelope) -> tuple[bytes, bool]:
        body = envelope.model_dump_json().encode("utf-8")
        if self.encryption is not None:
            return self.encryption.encrypt_bytes(body), True
        return body, False

    def _decode(self, body: bytes, encrypted: bool) -> OfflineEnvelope:
        if encrypted:
            if self.encryption is None:
                raise StorageError(
                    "Envelope body is encrypted but no encryption key is configured",
                    operation="read_offline"
                )
            body = self.encryption.decrypt_bytes(body)
        return OfflineEnvelope.model_validate_json(body)

    def _write(self, conn: duckdb.DuckDBPyConnection, key: str, envelope: OfflineEnvelope) -> None:
        body, encrypted = self._encode(envelope)
        # A retired key stays retired when written again
        retired = conn.execute(
            "SELECT superseded_by FROM offline_envelopes WHERE storage_key = ?", [key]
        ).fetchone()
        conn.execute("""
            INSERT OR REPLACE INTO offline_envelopes (
                storage_key, local_id, server_id, offline_status, attempted_submit,
                saved_at, submitted_at, server_synced_at, sync_attempts, last_error,
                superseded_by, body_encrypted, body_hash, body
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, [
            key,
            envelope.record.local_id,
            envelope.record.server_id,
            envelope.offline_status.value,
            envelope.attempted_submit,
            _naive_utc(envelope.saved_at),
            _naive_utc(envelope.submitted_at),
            _naive_utc(envelope.server_synced_at),
            envelope.sync_attempts,
            envelope.last_error,
            retired[0] if retired else None,
            encrypted,
            EncryptionService.hash_value(body),
            body,
        ])

    def save_offline(self, key: str, envelope: OfflineEnvelope) -> Result[str]:
        """Persist an envelope under ``key``, replacing any previous one.

        Parameters:
            key: Local or server identifier (the latest known key)
            envelope: Envelope to persist

        Returns:
            Result[str]: The key written, or a LocalWriteError failure
        """
        try:
            self._ensure_schema()
            self._write(self._get_connection(), key, envelope)
            logger.info(f"Saved offline envelope {key} ({envelope.offline_status.value})")
            return Result.success_result(key)

        except (duckdb.Error, StorageError, ValueError) as e:
            error_msg = f"Failed to save offline envelope {key}: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                LocalWriteError(error_msg, operation="save_offline", details={"key": key}),
                error_type="LocalWriteError",
                error_details={"key": key},
            )

    def rekey(self, old_key: str, new_key: str, envelope: OfflineEnvelope) -> Result[str]:
        """Write ``envelope`` under ``new_key`` and retire ``old_key`` atomically.

        Returns:
            Result[str]: The new key, or a LocalWriteError failure
        """
        if old_key == new_key:
            return self.save_offline(new_key, envelope)

        try:
            self._ensure_schema()
            conn = self._get_connection()
            conn.begin()
            try:
                self._write(conn, new_key, envelope)
                conn.execute(
                    "UPDATE offline_envelopes SET superseded_by = ? WHERE storage_key = ?",
                    [new_key, old_key],
                )
                conn.execute(
                    "INSERT OR REPLACE INTO reconciled_ids (local_key, server_key, reconciled_at) VALUES (?, ?, ?)",
                    [old_key, new_key, _naive_utc(datetime.now(timezone.utc))],
                )
                conn.commit()
            except Exception:
                conn.rollback()
                raise

            logger.info(f"Re-keyed offline envelope {old_key} -> {new_key}")
            return Result.success_result(new_key)

        except (duckdb.Error, StorageError, ValueError) as e:
            error_msg = f"Failed to re-key offline envelope {old_key} -> {new_key}: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(
                LocalWriteError(error_msg, operation="rekey", details={"old_key": old_key, "new_key": new_key}),
                error_type="LocalWriteError",
                error_details={"old_key": old_key, "new_key": new_key},
            )

    def read_offline(self, key: str) -> Optional[OfflineEnvelope]:
        """Read the envelope stored under ``key``.

        Returns:
            The envelope, or None if nothing is stored under ``key``

        Raises:
            StorageError: If the row exists but cannot be read or decoded
        """
        self._ensure_schema()
        try:
            row = self._get_connection().execute(
                "SELECT body, body_encrypted FROM offline_envelopes WHERE storage_key = ?",
                [key],
            ).fetchone()
        except duckdb.Error as e:
            raise StorageError(
                f"Failed to read offline envelope {key}: {str(e)}",
                operation="read_offline",
                details={"key": key},
            ) from e

        if row is None:
            return None

        try:
            return self._decode(bytes(row[0]), bool(row[1]))
        except (PydanticValidationError, ValueError) as e:
            raise StorageError(
                f"Offline envelope {key} is unreadable: {str(e)}",
                operation="read_offline",
                details={"key": key},
            ) from e

    def superseded_by(self, key: str) -> Optional[str]:
        """Key that replaced ``key`` after re-keying, if any.

        Read from reconciled_ids, which retention purges leave in place.

        Raises:
            StorageError: If the lookup fails
        """
        self._ensure_schema()
        try:
            row = self._get_connection().execute(
                "SELECT server_key FROM reconciled_ids WHERE local_key = ?",
                [key],
            ).fetchone()
        except duckdb.Error as e:
            raise StorageError(
                f"Failed to look up re-key of {key}: {str(e)}",
                operation="superseded_by",
                details={"key": key},
            ) from e
        return row[0] if row else None

    def count(self) -> int:
        """Number of envelopes still waiting to be synchronized."""
        self._ensure_schema()
        row = self._get_connection().execute(
            f"SELECT COUNT(*) FROM offline_envelopes WHERE {_PENDING_FILTER}",
            _PENDING_PARAMS,
        ).fetchone()
        return int(row[0])

    def list_pending(self) -> list[OfflineEnvelope]:
        """All envelopes not yet synchronized, oldest first."""
        self._ensure_schema()
        rows = self._get_connection().execute(
            f"SELECT storage_key, body, body_encrypted FROM offline_envelopes "
            f"WHERE {_PENDING_FILTER} ORDER BY saved_at",
            _PENDING_PARAMS,
        ).fetchall()
        return [self._decode(bytes(body), bool(encrypted)) for _, body, encrypted in rows]

    def list_summaries(self, include_retired: bool = False) -> list[dict]:
        """Bookkeeping columns for every envelope, without decrypting bodies."""
        self._ensure_schema()
        query = (
            "SELECT storage_key, local_id, server_id, offline_status, attempted_submit, "
            "saved_at, sync_attempts, last_error, superseded_by FROM offline_envelopes"
        )
        if not include_retired:
            query += " WHERE superseded_by IS NULL"
        query += " ORDER BY saved_at"

        cursor = self._get_connection().execute(query)
        columns = [desc[0] for desc in cursor.description]
        return [dict(zip(columns, row)) for row in cursor.fetchall()]

    def delete(self, key: str) -> Result[bool]:
        """Delete the envelope stored under ``key``."""
        try:
            self._ensure_schema()
            conn = self._get_connection()
            existed = conn.execute(
                "SELECT COUNT(*) FROM offline_envelopes WHERE storage_key = ?", [key]
            ).fetchone()[0] > 0
            conn.execute("DELETE FROM offline_envelopes WHERE storage_key = ?", [key])
            return Result.success_result(existed)
        except (duckdb.Error, StorageError) as e:
            error_msg = f"Failed to delete offline envelope {key}: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(StorageError(error_msg, operation="delete"), error_type="StorageError")

    def purge_synced(self) -> Result[int]:
        """Retention: delete synced envelopes and retired local-id entries.

        Identifier assignments in reconciled_ids are kept, so a purged local id
        still resolves to its server id.
        """
        try:
            self._ensure_schema()
            conn = self._get_connection()
            condition = "offline_status = ? OR superseded_by IS NOT NULL"
            params = [OfflineStatus.SYNCED.value]
            removed = conn.execute(
                f"SELECT COUNT(*) FROM offline_envelopes WHERE {condition}", params
            ).fetchone()[0]
            conn.execute(f"DELETE FROM offline_envelopes WHERE {condition}", params)
            logger.info(f"Purged {removed} synced or retired offline envelopes")
            return Result.success_result(int(removed))
        except (duckdb.Error, StorageError) as e:
            error_msg = f"Failed to purge synced envelopes: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(StorageError(error_msg, operation="purge_synced"), error_type="StorageError")

    def clear_all(self) -> Result[int]:
        """Delete every envelope, including unsynced ones, and every identifier assignment."""
        try:
            self._ensure_schema()
            conn = self._get_connection()
            removed = conn.execute("SELECT COUNT(*) FROM offline_envelopes").fetchone()[0]
            conn.execute("DELETE FROM offline_envelopes")
            conn.execute("DELETE FROM reconciled_ids")
            logger.warning(f"Cleared all {removed} offline envelopes")
            return Result.success_result(int(removed))
        except (duckdb.Error, StorageError) as e:
            error_msg = f"Failed to clear offline envelopes: {str(e)}"
            logger.error(error_msg, exc_info=True)
            return Result.failure_result(StorageError(error_msg, operation="clear_all"), error_type="StorageError")

    def close(self) -> None:
        """Close storage connection and release resources."""
        if self._connection is not None:
            try:
                self._connection.close()
                logger.info("Closed DuckDB connection")
            except duckdb.Error as e:
                logger.warning(f"Error closing connection: {str(e)}")
            finally:
                self._connection = None
                self._initialized = False
