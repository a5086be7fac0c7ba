"""
Database Module
===============
Async document store over Supabase tables.

Every call runs the synchronous Supabase client in the default executor so
request handlers suspend instead of blocking the event loop. Failures surface
as StoreError; there are no retries and no write queue. Callers decide how
to present an error.
"""

import asyncio
import logging
from typing import Dict, List, Any, Optional, Callable
from datetime import datetime, timezone

from supabase import create_client, Client
from postgrest.exceptions import APIError
from prometheus_client import Counter

from config import SupabaseConfig


logger = logging.getLogger(__name__)


# ============================================================================
# METRICS
# ============================================================================

store_errors = Counter(
    'dashboard_store_errors_total',
    'Document store failures',
    ['table', 'operation']
)


# ============================================================================
# ERRORS
# ============================================================================

class StoreError(Exception):
    """Raised when a read or write against the document store fails."""

    def __init__(self, message: str, table: Optional[str] = None, operation: Optional[str] = None):
        super().__init__(message)
        self.table = table
        self.operation = operation


class NotFoundError(StoreError):
    """Raised when a document addressed by id does not exist."""
    pass


# ============================================================================
# TIMESTAMPS
# ============================================================================

def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_store_timestamp(value: Optional[datetime]) -> Optional[str]:
    """Serialize a datetime for the store (UTC ISO-8601)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Convert a store timestamp into an aware UTC datetime.

    Accepts datetimes, ISO-8601 strings (with or without a trailing Z) and
    None. Naive values are taken to be UTC.
    """
    if value is None or value == "":
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise StoreError(f"Unreadable timestamp: {value!r}")
    else:
        raise StoreError(f"Unsupported timestamp type: {type(value).__name__}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)

    return parsed.astimezone(timezone.utc)


# ============================================================================
# CLIENT
# ============================================================================

def create_supabase_client(config: SupabaseConfig) -> Client:
    """Create the shared Supabase client (documents + auth)."""
    client = create_client(config.url, config.key)
    logger.info("Supabase client initialized")
    return client


class DocumentStore:
    """
    Collection-based CRUD with equality filters and ordering.

    Documents are plain dicts. Generated ids come back from create().
    """

    def __init__(self, client: Client):
        self.client = client

        # Stats
        self.read_count = 0
        self.write_count = 0
        self.error_count = 0
        self.last_error: Optional[str] = None

        logger.info("DocumentStore initialized")

    async def _execute(self, table: str, operation: str, call: Callable[[], Any]) -> Any:
        """Run a blocking Supabase call off the event loop."""
        loop = asyncio.get_running_loop()

        try:
            result = await loop.run_in_executor(None, call)

        except APIError as e:
            self._record_error(table, operation, e.message or str(e))
            raise StoreError(
                f"{operation} on {table} failed: {e.message or e}",
                table=table,
                operation=operation
            ) from e

        except Exception as e:
            self._record_error(table, operation, str(e))
            raise StoreError(
                f"{operation} on {table} failed: {e}",
                table=table,
                operation=operation
            ) from e

        if operation in ("select", "get"):
            self.read_count += 1
        else:
            self.write_count += 1

        return result

    def _record_error(self, table: str, operation: str, message: str):
        self.error_count += 1
        self.last_error = message
        store_errors.labels(table=table, operation=operation).inc()
        logger.error(
            f"Store {operation} failed on {table}: {message}",
            extra={"table": table, "operation": operation}
        )

    # ========================================================================
    # READ OPERATIONS
    # ========================================================================

    async def get(self, table: str, doc_id: str, id_field: str = "id") -> Optional[Dict[str, Any]]:
        """
        Fetch one document by id.

        Returns:
            Document dict or None if absent
        """
        result = await self._execute(
            table,
            "get",
            lambda: self.client
                .table(table)
                .select("*")
                .eq(id_field, doc_id)
                .limit(1)
                .execute()
        )

        if result.data:
            return result.data[0]

        return None

    async def query(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False
    ) -> List[Dict[str, Any]]:
        """
        Fetch documents matching all equality filters.

        Args:
            table: Collection name
            filters: Field -> value equality constraints
            order_by: Optional field to sort on
            descending: Sort direction

        Returns:
            List of document dicts
        """
        def call():
            request = self.client.table(table).select("*")
            for field_name, value in (filters or {}).items():
                request = request.eq(field_name, value)
            if order_by:
                request = request.order(order_by, desc=descending)
            return request.execute()

        result = await self._execute(table, "select", call)
        return list(result.data or [])

    # ========================================================================
    # WRITE OPERATIONS
    # ========================================================================

    async def create(self, table: str, data: Dict[str, Any], id_field: str = "id") -> str:
        """
        Insert a document.

        Returns:
            The generated document id
        """
        result = await self._execute(
            table,
            "insert",
            lambda: self.client.table(table).insert(data).execute()
        )

        if not result.data:
            raise StoreError(f"insert on {table} returned no row", table=table, operation="insert")

        return str(result.data[0][id_field])

    async def update(
        self,
        table: str,
        doc_id: str,
        data: Dict[str, Any],
        id_field: str = "id"
    ) -> Dict[str, Any]:
        """
        Apply a partial update.

        Returns:
            The updated document

        Raises:
            NotFoundError: If no document has this id
        """
        result = await self._execute(
            table,
            "update",
            lambda: self.client
                .table(table)
                .update(data)
                .eq(id_field, doc_id)
                .execute()
        )

        if not result.data:
            raise NotFoundError(f"{table}/{doc_id} not found", table=table, operation="update")

        return result.data[0]

    async def delete(self, table: str, doc_id: str, id_field: str = "id"):
        """
        Delete a document.

        Raises:
            NotFoundError: If no document has this id
        """
        result = await self._execute(
            table,
            "delete",
            lambda: self.client
                .table(table)
                .delete()
                .eq(id_field, doc_id)
                .execute()
        )

        if not result.data:
            raise NotFoundError(f"{table}/{doc_id} not found", table=table, operation="delete")

    # ========================================================================
    # STATS & MONITORING
    # ========================================================================

    def get_stats(self) -> Dict[str, Any]:
        """Get store statistics."""
        return {
            "reads": self.read_count,
            "writes": self.write_count,
            "errors": self.error_count,
            "last_error": self.last_error,
        }

    def is_healthy(self) -> bool:
        """Check if the store has a client."""
        return self.client is not None
