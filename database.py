"""
database.py
-----------
Ledger store access with explicit transaction handling and connection management.
Rows are only ever appended and read; nothing here updates or deletes a record.
"""

import sqlite3
import logging
from datetime import datetime, timezone
from pathlib import Path

from models import GENESIS_HASH, RECORD_COLUMNS, create_appointment_record

# Configure logging
logger = logging.getLogger(__name__)

TABLE_NAME = "appointment_ledger"

_SELECT_COLUMNS = "seq, " + ", ".join(RECORD_COLUMNS)

_SQLITE_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  appointment_id TEXT NOT NULL UNIQUE,
  name TEXT NOT NULL,
  encrypted_payload TEXT NOT NULL,
  content_hash TEXT NOT NULL,
  previous_hash TEXT NOT NULL,
  scheduled_time TEXT NOT NULL,
  created_at TEXT NOT NULL
)
"""

_SQLSERVER_SCHEMA = f"""
IF OBJECT_ID('dbo.{TABLE_NAME}', 'U') IS NULL
CREATE TABLE dbo.{TABLE_NAME} (
  seq INT IDENTITY(1,1) PRIMARY KEY,
  appointment_id NVARCHAR(64) NOT NULL UNIQUE,
  name NVARCHAR(255) NOT NULL,
  encrypted_payload NVARCHAR(MAX) NOT NULL,
  content_hash CHAR(64) NOT NULL,
  previous_hash VARCHAR(64) NOT NULL,
  scheduled_time NVARCHAR(64) NOT NULL,
  created_at NVARCHAR(40) NOT NULL
)
"""


def _row_to_record(row):
    seq, appointment_id, name, encrypted_payload, content_hash, previous_hash, scheduled_time = tuple(row)
    return create_appointment_record(
        appointment_id=appointment_id,
        name=name,
        encrypted_payload=encrypted_payload,
        content_hash=content_hash,
        previous_hash=previous_hash,
        scheduled_time=scheduled_time,
        row_number=seq,
    )


class LedgerStore:
    """
    Append-and-scan access to the appointment ledger table.

    Supports a local SQLite file (default) and SQL Server through pyodbc.
    Both drivers use the '?' parameter style, so only DDL, row limiting and
    locking hints differ between the two backends.
    """

    def __init__(self, config):
        self.backend = config.get("LEDGER_BACKEND", "sqlite")
        self.config = config
        if self.backend not in ("sqlite", "sqlserver"):
            raise ValueError(f"Unsupported LEDGER_BACKEND: {self.backend}")
        if self.backend == "sqlite":
            self._path = Path(config["LEDGER_DB_PATH"]).expanduser().resolve()
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    # ------------------------------------------------------------------
    # Connections and transactions
    # ------------------------------------------------------------------

    def get_connection(self):
        """
        Establishes and returns a connection to the ledger database.

        Returns:
            A DB-API connection with autocommit disabled.
        """
        if self.backend == "sqlserver":
            return self._connect_sqlserver()
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        return conn

    def _connect_sqlserver(self):
        import pyodbc

        conn_str = (
            f"DRIVER={self.config['SQL_SERVER_DRIVER']};"
            f"SERVER={self.config['SQL_SERVER_SERVER']};"
            f"DATABASE={self.config['SQL_SERVER_DATABASE']};"
            f"Trusted_Connection={self.config['SQL_SERVER_TRUSTED_CONNECTION']}"
        )
        logger.info(f"Connecting to database: {self.config['SQL_SERVER_DATABASE']} on server {self.config['SQL_SERVER_SERVER']}")
        conn = pyodbc.connect(conn_str)
        conn.autocommit = False  # Ensure explicit transaction control
        return conn

    def execute_with_transaction(self, func, *args, **kwargs):
        """
        Execute a ledger function within a transaction with proper error handling.

        Args:
            func: The function to execute; receives the connection first
            *args: Arguments to pass to the function
            **kwargs: Keyword arguments to pass to the function

        Returns:
            The result of the function call
        """
        conn = None
        try:
            # Create a fresh connection for this transaction
            conn = self.get_connection()

            result = func(conn, *args, **kwargs)

            conn.commit()
            logger.debug("Transaction committed successfully")

            return result
        except Exception as e:
            logger.error(f"Transaction failed: {str(e)}")
            if conn:
                try:
                    conn.rollback()
                    logger.info("Transaction rolled back")
                except Exception as rollback_error:
                    logger.error(f"Rollback failed: {str(rollback_error)}")
            raise
        finally:
            if conn is not None:
                conn.close()

    def _init_schema(self):
        schema = _SQLSERVER_SCHEMA if self.backend == "sqlserver" else _SQLITE_SCHEMA

        def _create(conn):
            conn.cursor().execute(schema)

        self.execute_with_transaction(_create)

    # ------------------------------------------------------------------
    # Ledger operations (all take an open connection)
    # ------------------------------------------------------------------

    def begin_append(self, conn):
        """
        Take the write lock for a read-last-then-append sequence.

        SQLite needs BEGIN IMMEDIATE so no other writer can slip in between the
        tail read and the insert. SQL Server gets the same effect from the
        UPDLOCK/HOLDLOCK hints in get_last_hash(for_update=True).
        """
        if self.backend == "sqlite":
            conn.execute("BEGIN IMMEDIATE")

    def get_last_hash(self, conn, for_update=False):
        """
        Returns the content hash of the newest record, or GENESIS for an empty ledger.
        """
        cursor = conn.cursor()
        if self.backend == "sqlserver":
            hints = " WITH (UPDLOCK, HOLDLOCK)" if for_update else ""
            cursor.execute(f"SELECT TOP 1 content_hash FROM dbo.{TABLE_NAME}{hints} ORDER BY seq DESC")
        else:
            cursor.execute(f"SELECT content_hash FROM {TABLE_NAME} ORDER BY seq DESC LIMIT 1")
        row = cursor.fetchone()
        return row[0] if row else GENESIS_HASH

    def append_row(self, conn, record):
        """
        Inserts one ledger record.

        Args:
            conn: Database connection
            record (dict): Output of models.create_appointment_record

        Returns:
            int: Rows inserted
        """
        cursor = conn.cursor()
        table = f"dbo.{TABLE_NAME}" if self.backend == "sqlserver" else TABLE_NAME
        cursor.execute(
            f"""
            INSERT INTO {table}
            ({", ".join(RECORD_COLUMNS)}, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record["appointment_id"],
                record["name"],
                record["encrypted_payload"],
                record["content_hash"],
                record["previous_hash"],
                record["scheduled_time"],
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        logger.info(f"Appended ledger record {record['appointment_id']}: {cursor.rowcount} rows affected")
        return cursor.rowcount

    def appointment_id_exists(self, conn, appointment_id):
        cursor = conn.cursor()
        table = f"dbo.{TABLE_NAME}" if self.backend == "sqlserver" else TABLE_NAME
        cursor.execute(f"SELECT COUNT(*) FROM {table} WHERE appointment_id = ?", (appointment_id,))
        return cursor.fetchone()[0] > 0

    def read_rows(self, conn):
        """
        Reads every record in append order.

        Returns:
            list: Appointment records, oldest first
        """
        cursor = conn.cursor()
        table = f"dbo.{TABLE_NAME}" if self.backend == "sqlserver" else TABLE_NAME
        cursor.execute(f"SELECT {_SELECT_COLUMNS} FROM {table} ORDER BY seq ASC")
        return [_row_to_record(row) for row in cursor.fetchall()]

    def find_row_by_appointment_id(self, conn, appointment_id):
        """
        Finds a record by appointment id. Whitespace around the lookup value is stripped.

        Returns:
            dict: The record, or None if no row matches
        """
        wanted = str(appointment_id).strip()
        cursor = conn.cursor()
        table = f"dbo.{TABLE_NAME}" if self.backend == "sqlserver" else TABLE_NAME
        cursor.execute(
            f"SELECT {_SELECT_COLUMNS} FROM {table} WHERE appointment_id = ?",
            (wanted,),
        )
        row = cursor.fetchone()
        if not row:
            logger.info(f"No ledger record found with ID {wanted}")
            return None
        return _row_to_record(row)

    def verify_database_access(self):
        """
        Verify ledger access and connection parameters.

        Returns:
            dict: Verification results
        """
        results = {
            "backend": self.backend,
            "connection_success": False,
            "table_exists": False,
            "errors": [],
        }

        try:
            conn = self.get_connection()
            results["connection_success"] = True
            try:
                cursor = conn.cursor()
                if self.backend == "sqlserver":
                    cursor.execute(f"SELECT OBJECT_ID('dbo.{TABLE_NAME}')")
                    results["table_exists"] = cursor.fetchone()[0] is not None
                else:
                    cursor.execute(
                        "SELECT name FROM sqlite_master WHERE type = 'table' AND name = ?",
                        (TABLE_NAME,),
                    )
                    results["table_exists"] = cursor.fetchone() is not None
                if not results["table_exists"]:
                    results["errors"].append(f"Table '{TABLE_NAME}' does not exist")
            finally:
                conn.close()
        except Exception as e:
            logger.error(f"Ledger verification failed: {str(e)}")
            results["errors"].append(f"Connection error: {str(e)}")

        return results
