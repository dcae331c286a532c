"""Database node handlers - query and write rows through SQLAlchemy Core.

Connections come from the vault (``context.get_connection(connectionId)``)
and engines are shared through the process-wide EnginePool. Tables are
addressed by name without reflection.

Filters are ``{column: value}`` maps joined with AND. A value may also be an
operator map such as ``{"$gte": 18}`` (``$eq $ne $gt $gte $lt $lte $in $nin``).
Single-row writes (``updateOne``, ``deleteOne``) target the first matching row
by its key column (``keyColumn``, default ``id``).
"""

import asyncio
import base64
import re
import time
from datetime import date, datetime, time as dt_time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, column, delete, func, insert, literal_column, select, table, update
from sqlalchemy.exc import DBAPIError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine

from constants import DATABASE_QUERY, DATABASE_WRITE
from core.logging import get_logger
from services.execution.errors import NodeErrorCode
from services.execution.pool import get_engine_pool
from services.execution.types import (
    HandlerMetadata, NodeExecutionContext, NodeExecutionResult, failure_result, success_result,
)

logger = get_logger(__name__)

IDENTIFIER = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
QUERY_OPERATIONS = ('find', 'findOne', 'count', 'distinct')
WRITE_OPERATIONS = ('insertOne', 'insertMany', 'updateOne', 'updateMany', 'deleteOne', 'deleteMany')
DEFAULT_LIMIT = 100

_query_timeout = {"seconds": 30.0}


class InvalidQuery(ValueError):
    """Configuration that cannot be turned into a statement."""


def configure_query_timeout(seconds: float) -> None:
    _query_timeout["seconds"] = seconds


def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date, dt_time)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode('ascii')
    return value


def _row_to_dict(row) -> Dict[str, Any]:
    return {key: _jsonable(value) for key, value in row._mapping.items()}


def _identifier(name: Any, kind: str) -> str:
    if not isinstance(name, str) or not IDENTIFIER.match(name):
        raise InvalidQuery(f"Invalid {kind} name: {name!r}")
    return name


def _table(name: str, columns: List[str]):
    return table(_identifier(name, 'table'), *[column(_identifier(c, 'column')) for c in columns])


def build_where(filter_spec: Optional[Dict[str, Any]]):
    """Translate a filter map into a list of SQLAlchemy clauses."""
    clauses = []
    for name, condition in (filter_spec or {}).items():
        col = column(_identifier(name, 'column'))
        if isinstance(condition, dict) and condition and all(k.startswith('$') for k in condition):
            for op, operand in condition.items():
                if op == '$eq':
                    clauses.append(col.is_(None) if operand is None else col == operand)
                elif op == '$ne':
                    clauses.append(col.is_not(None) if operand is None else col != operand)
                elif op == '$gt':
                    clauses.append(col > operand)
                elif op == '$gte':
                    clauses.append(col >= operand)
                elif op == '$lt':
                    clauses.append(col < operand)
                elif op == '$lte':
                    clauses.append(col <= operand)
                elif op == '$in':
                    clauses.append(col.in_(list(operand or [])))
                elif op == '$nin':
                    clauses.append(col.not_in(list(operand or [])))
                else:
                    raise InvalidQuery(f"Unsupported filter operator: {op}")
        elif condition is None:
            clauses.append(col.is_(None))
        else:
            clauses.append(col == condition)
    return clauses


def _projection(spec: Any) -> List[str]:
    if not spec:
        return []
    if isinstance(spec, list):
        return [_identifier(c, 'column') for c in spec]
    if isinstance(spec, dict):
        return [_identifier(c, 'column') for c, include in spec.items() if include]
    raise InvalidQuery("projection must be a list or a map")


def _order_by(spec: Any):
    clauses = []
    for name, direction in (spec or {}).items():
        col = column(_identifier(name, 'column'))
        clauses.append(col.desc() if direction in (-1, '-1', 'desc', 'DESC') else col.asc())
    return clauses


def _int(value: Any, default: int) -> int:
    try:
        return int(value) if value is not None else default
    except (TypeError, ValueError):
        raise InvalidQuery(f"Expected an integer, got {value!r}")


async def _resolve_engine(context: NodeExecutionContext) -> Tuple[Optional[AsyncEngine],
                                                                 Optional[str],
                                                                 Optional[NodeExecutionResult]]:
    config = context.resolved_config
    connection_id = config.get('connectionId')
    if not connection_id:
        await context.log('error', 'Database connection is required')
        return None, None, failure_result(NodeErrorCode.MISSING_CONFIG, 'Database connection is required')
    if not (config.get('table') or config.get('collection')):
        return None, None, failure_result(NodeErrorCode.MISSING_CONFIG, 'Table name is required')

    connection = await context.get_connection(connection_id)
    if not connection or not connection.get('connectionString'):
        await context.log('error', 'Connection not found', {"connectionId": connection_id})
        return None, None, failure_result(NodeErrorCode.MISSING_CONNECTION,
                                          f"Database connection not found: {connection_id}")

    try:
        engine = await get_engine_pool().acquire(connection['connectionString'])
    except (SQLAlchemyError, ValueError) as e:
        return None, None, failure_result(NodeErrorCode.INVALID_CONFIG,
                                          f"Invalid connection string for {connection_id}: {e}")
    return engine, connection.get('database'), None


CONNECTION_MARKERS = ('connect', 'unable to open', 'refused', 'timed out', 'closed', 'locked')


def _classify_error(e: Exception, prefix: str) -> NodeExecutionResult:
    """Connection-level faults are retryable; statement errors are not."""
    connection_fault = isinstance(e, DBAPIError) and e.connection_invalidated
    if isinstance(e, OperationalError):
        reason = str(e.orig or e).lower()
        connection_fault = connection_fault or any(m in reason for m in CONNECTION_MARKERS)
    if connection_fault:
        return failure_result(NodeErrorCode.CONNECTION_FAILED, f"{prefix}: {e}", retryable=True)
    return failure_result(NodeErrorCode.OPERATION_FAILED, f"{prefix}: {e}")


# =============================================================================
# QUERY
# =============================================================================

async def _run_query(engine: AsyncEngine, config: Dict[str, Any], operation: str) -> Dict[str, Any]:
    table_name = config.get('table') or config.get('collection')
    where = build_where(config.get('query'))

    async with engine.connect() as conn:
        if operation in ('find', 'findOne'):
            columns = _projection(config.get('projection'))
            source = _table(table_name, columns)
            selected = [column(c) for c in columns] or [literal_column('*')]
            stmt = select(*selected).select_from(source)
            if where:
                stmt = stmt.where(and_(*where))
            stmt = stmt.order_by(*_order_by(config.get('sort')))
            if operation == 'findOne':
                row = (await conn.execute(stmt.limit(1))).first()
                return {"document": _row_to_dict(row) if row is not None else None,
                        "found": row is not None}
            stmt = stmt.limit(_int(config.get('limit'), DEFAULT_LIMIT))
            skip = _int(config.get('skip'), 0)
            if skip:
                stmt = stmt.offset(skip)
            documents = [_row_to_dict(r) for r in (await conn.execute(stmt)).all()]
            return {"documents": documents, "count": len(documents)}

        if operation == 'count':
            stmt = select(func.count()).select_from(_table(table_name, []))
            if where:
                stmt = stmt.where(and_(*where))
            return {"count": (await conn.execute(stmt)).scalar_one()}

        field = config.get('distinctField')
        if not field:
            raise InvalidQuery('Distinct field is required')
        stmt = select(column(_identifier(field, 'column'))).distinct().select_from(
            _table(table_name, [field]))
        if where:
            stmt = stmt.where(and_(*where))
        values = [_jsonable(v) for v in (await conn.execute(stmt)).scalars().all()]
        return {"values": values, "count": len(values)}


async def handle_database_query(context: NodeExecutionContext) -> NodeExecutionResult:
    """Query rows: ``find``, ``findOne``, ``count`` or ``distinct``."""
    start_time = time.time()
    config = context.resolved_config
    operation = config.get('operation') or 'find'
    if operation not in QUERY_OPERATIONS:
        return failure_result(NodeErrorCode.INVALID_OPERATION, f"Unknown query operation: {operation}")

    engine, database, error = await _resolve_engine(context)
    if error:
        return error

    try:
        result = await asyncio.wait_for(_run_query(engine, config, operation),
                                        timeout=_query_timeout["seconds"])
    except InvalidQuery as e:
        return failure_result(NodeErrorCode.INVALID_CONFIG, str(e))
    except asyncio.TimeoutError:
        return failure_result(NodeErrorCode.TIMEOUT,
                              f"Query timed out after {_query_timeout['seconds']}s", retryable=True)
    except SQLAlchemyError as e:
        await context.log('error', 'Query failed', {"error": str(e)})
        return _classify_error(e, 'Database query failed')

    duration_ms = int((time.time() - start_time) * 1000)
    await context.log('info', f"{operation} completed", {"durationMs": duration_ms})
    return success_result({
        **result,
        "metadata": {
            "table": config.get('table') or config.get('collection'),
            "database": database,
            "operation": operation,
            "executionTimeMs": duration_ms,
        },
    }, duration_ms=duration_ms)


# =============================================================================
# WRITE
# =============================================================================

async def _first_key(conn, table_name: str, key_column: str, where) -> Any:
    stmt = select(column(_identifier(key_column, 'column'))).select_from(
        _table(table_name, [key_column]))
    if where:
        stmt = stmt.where(and_(*where))
    row = (await conn.execute(stmt.limit(1))).first()
    return row[0] if row is not None else None


async def _run_write(engine: AsyncEngine, config: Dict[str, Any], operation: str) -> Dict[str, Any]:
    table_name = config.get('table') or config.get('collection')
    document = config.get('document')
    key_column = config.get('keyColumn') or 'id'
    where = build_where(config.get('filter'))

    async with engine.begin() as conn:
        if operation == 'insertOne':
            if not isinstance(document, dict) or not document:
                raise InvalidQuery('document is required for insertOne and must be an object')
            result = await conn.execute(insert(_table(table_name, list(document))).values(**document))
            inserted_id = None
            try:
                if result.inserted_primary_key:
                    inserted_id = _jsonable(result.inserted_primary_key[0])
            except SQLAlchemyError:
                inserted_id = None
            return {"acknowledged": True, "insertedCount": 1, "insertedId": inserted_id}

        if operation == 'insertMany':
            if not isinstance(document, list) or not document or \
                    not all(isinstance(d, dict) for d in document):
                raise InvalidQuery('document must be an array of objects for insertMany')
            columns = sorted({key for d in document for key in d})
            rows = [{c: d.get(c) for c in columns} for d in document]
            await conn.execute(insert(_table(table_name, columns)), rows)
            return {"acknowledged": True, "insertedCount": len(rows)}

        if operation in ('updateOne', 'updateMany'):
            values = document.get('$set', document) if isinstance(document, dict) else None
            if not values:
                raise InvalidQuery(f"document is required for {operation}")
            target = _table(table_name, list(values) + [key_column])
            stmt = update(target).values(**values)
            if operation == 'updateOne':
                key = await _first_key(conn, table_name, key_column, where)
                if key is None:
                    return {"acknowledged": True, "matchedCount": 0, "modifiedCount": 0}
                stmt = stmt.where(column(key_column) == key)
            elif where:
                stmt = stmt.where(and_(*where))
            result = await conn.execute(stmt)
            return {"acknowledged": True, "matchedCount": result.rowcount,
                    "modifiedCount": result.rowcount}

        target = _table(table_name, [key_column])
        stmt = delete(target)
        if operation == 'deleteOne':
            key = await _first_key(conn, table_name, key_column, where)
            if key is None:
                return {"acknowledged": True, "deletedCount": 0}
            stmt = stmt.where(column(key_column) == key)
        elif where:
            stmt = stmt.where(and_(*where))
        result = await conn.execute(stmt)
        return {"acknowledged": True, "deletedCount": result.rowcount}


async def handle_database_write(context: NodeExecutionContext) -> NodeExecutionResult:
    """Write rows: insert, update or delete one or many."""
    start_time = time.time()
    config = context.resolved_config
    operation = config.get('operation')
    if not operation:
        return failure_result(NodeErrorCode.MISSING_CONFIG, 'operation is required')
    if operation not in WRITE_OPERATIONS:
        return failure_result(NodeErrorCode.INVALID_OPERATION, f"Unknown write operation: {operation}")

    engine, database, error = await _resolve_engine(context)
    if error:
        return error

    if operation in ('deleteOne', 'deleteMany', 'updateMany') and not config.get('filter'):
        await context.log('warn', f"{operation} called with empty filter")

    try:
        result = await asyncio.wait_for(_run_write(engine, config, operation),
                                        timeout=_query_timeout["seconds"])
    except InvalidQuery as e:
        return failure_result(NodeErrorCode.INVALID_CONFIG, str(e))
    except asyncio.TimeoutError:
        return failure_result(NodeErrorCode.TIMEOUT,
                              f"Write timed out after {_query_timeout['seconds']}s", retryable=True)
    except SQLAlchemyError as e:
        await context.log('error', 'Write failed', {"error": str(e)})
        return _classify_error(e, 'Database write failed')

    duration_ms = int((time.time() - start_time) * 1000)
    await context.log('info', f"{operation} completed successfully", result)
    return success_result({
        "operation": operation,
        "table": config.get('table') or config.get('collection'),
        "database": database,
        **result,
    }, duration_ms=duration_ms)


DATABASE_HANDLERS = [
    (HandlerMetadata(type=DATABASE_QUERY, name='Database Query',
                     description='Queries rows from a SQL database', category='integration'),
     handle_database_query),
    (HandlerMetadata(type=DATABASE_WRITE, name='Database Write',
                     description='Inserts, updates or deletes rows', category='integration'),
     handle_database_write),
]
