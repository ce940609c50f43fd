"""
Supabase client module for PatchDeploy.

This module provides a client for interacting with Supabase.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from supabase import create_client, Client
from tenacity import retry, stop_after_attempt, wait_exponential

from patchdeploy.core.config import settings

# Configure logging
logger = logging.getLogger(__name__)

# Global client instance
_supabase_client: Optional[Client] = None


@retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=1, max=10))
async def get_supabase_client() -> Client:
    """
    Get a Supabase client instance.

    Returns:
        Client: Supabase client instance

    Raises:
        ValueError: If Supabase URL or key is not configured
    """
    global _supabase_client

    if _supabase_client is not None:
        return _supabase_client

    if not settings.SUPABASE_URL or not settings.SUPABASE_KEY:
        raise ValueError("Supabase URL and key must be configured in environment variables")

    try:
        _supabase_client = create_client(settings.SUPABASE_URL, settings.SUPABASE_KEY)
        logger.info("Supabase client initialized successfully")
        return _supabase_client
    except Exception as e:
        logger.error(f"Failed to initialize Supabase client: {str(e)}")
        raise


@retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=1, max=10), reraise=True)
async def execute_query(table: str, query_func: Callable, **kwargs) -> Any:
    """
    Execute a query against Supabase.

    Args:
        table: Table name to query
        query_func: Function to apply to the query builder
        **kwargs: Additional arguments to pass to the query function

    Returns:
        Query result
    """
    try:
        client = await get_supabase_client()
        query = client.table(table)
        return query_func(query, **kwargs)
    except Exception as e:
        logger.error(f"Error executing query on table {table}: {str(e)}")
        raise


async def upsert_data(
    table: str, data: Any, on_conflict: str = "id", ignore_duplicates: bool = False
) -> List[Dict[str, Any]]:
    """
    Insert rows, or update them when the conflict key already exists.

    Args:
        table: Table name to write to
        data: One row or a list of rows
        on_conflict: Comma-separated conflict columns
        ignore_duplicates: Keep existing rows instead of updating them

    Returns:
        Written rows
    """
    def query_builder(query, **kwargs):
        return query.upsert(
            kwargs.get("data"),
            on_conflict=kwargs.get("on_conflict"),
            ignore_duplicates=kwargs.get("ignore_duplicates"),
        ).execute()

    result = await execute_query(
        table, query_builder, data=data, on_conflict=on_conflict, ignore_duplicates=ignore_duplicates
    )
    return result.data or []


async def update_data(table: str, id_column: str, id_value: Any, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Update data in a Supabase table.

    Args:
        table: Table name to update
        id_column: Column name for the ID
        id_value: ID value to match
        data: Data to update

    Returns:
        Updated data
    """
    def query_builder(query, **kwargs):
        return query.update(kwargs.get("data")).eq(kwargs.get("id_column"), kwargs.get("id_value")).execute()

    result = await execute_query(table, query_builder, data=data, id_column=id_column, id_value=id_value)
    return result.data[0] if result.data else {}


async def select_data(table: str, columns: str = "*", **filters) -> list:
    """
    Select data from a Supabase table.

    Args:
        table: Table name to select from
        columns: Columns to select
        **filters: Filters to apply (column=value)

    Returns:
        Selected data
    """
    def query_builder(query, **kwargs):
        query = query.select(kwargs.get("columns"))

        # Apply filters
        for column, value in kwargs.get("filters", {}).items():
            query = query.eq(column, value)

        return query.execute()

    result = await execute_query(table, query_builder, columns=columns, filters=filters)
    return result.data if result.data else []


async def select_by_id(table: str, id_column: str, id_value: Any, columns: str = "*") -> Dict[str, Any]:
    """
    Select a single record by ID from a Supabase table.

    Args:
        table: Table name to select from
        id_column: Column name for the ID
        id_value: ID value to match
        columns: Columns to select

    Returns:
        Selected record, or an empty dict
    """
    def query_builder(query, **kwargs):
        return query.select(kwargs.get("columns")).eq(kwargs.get("id_column"), kwargs.get("id_value")).execute()

    result = await execute_query(table, query_builder, columns=columns, id_column=id_column, id_value=id_value)
    return result.data[0] if result.data and result.data[0] else {}


async def delete_before(
    table: str, column: str, cutoff: str, exclude: Optional[Dict[str, Any]] = None, **filters
) -> int:
    """
    Delete rows whose ``column`` is earlier than ``cutoff``.

    Args:
        table: Table name to delete from
        column: Timestamp column to compare
        cutoff: ISO-8601 timestamp
        exclude: Rows to keep (column=value)
        **filters: Extra equality filters (column=value)

    Returns:
        Number of deleted rows
    """
    def query_builder(query, **kwargs):
        query = query.delete().lt(kwargs.get("column"), kwargs.get("cutoff"))
        for name, value in kwargs.get("filters", {}).items():
            query = query.eq(name, value)
        for name, value in kwargs.get("exclude", {}).items():
            query = query.neq(name, value)
        return query.execute()

    result = await execute_query(
        table, query_builder, column=column, cutoff=cutoff, filters=filters, exclude=exclude or {}
    )
    return len(result.data or [])
