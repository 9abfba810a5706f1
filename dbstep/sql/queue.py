# dbstep/sql/queue.py
"""
Concurrent dispatch of generated statements.

Statements for every group are built first, then sent to the connection all
at once with ``asyncio.gather``. Nothing is cancelled when one statement
fails: every dispatched statement is awaited, then the first failure (in
submission order) is raised as :class:`~dbstep.exceptions.ExecutionError`.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from ..connection import QueryResult
from ..defaults import settings
from ..exceptions import ExecutionError
from ..utils import flatten
from .grouping import TableGroup
from .statements import Statement

logger = logging.getLogger(__name__)

QueryFunc = Callable[[str], Awaitable[QueryResult]]
StatementFactory = Callable[[TableGroup], List[Statement]]
# table -> groups -> statements
Plan = List[List[List[Statement]]]


def sum_rows_affected(results: Iterable[Any]) -> int:
    """
    Total affected-row counts across (possibly nested) query results.

    Each result's ``rows_affected`` may be a list with one count per result
    set or a single integer.
    """
    total = 0
    for result in flatten(list(results)):
        counts = getattr(result, 'rows_affected', result)
        if isinstance(counts, (list, tuple)):
            total += sum(int(count or 0) for count in counts)
        else:
            total += int(counts or 0)
    return total


def build_plan(tables: Dict[str, List[TableGroup]], build_statements: StatementFactory) -> Plan:
    """Build every group's statements, in table then group order."""
    return [[build_statements(group) for group in groups] for groups in tables.values()]


async def run_plan(plan: Plan, query: QueryFunc, max_concurrency: Optional[int] = None) -> List[QueryResult]:
    """
    Send every statement in ``plan`` concurrently and wait for all of them.

    Args:
        plan: Statements nested by table and group, from :func:`build_plan`.
        query: Coroutine function that executes SQL text.
        max_concurrency: Cap on statements in flight. Defaults to the
            ``max_concurrency`` setting; None means no cap.

    Returns:
        One QueryResult per statement, flattened in submission order.

    Raises:
        ExecutionError: If any statement failed, after all have finished.
    """
    if max_concurrency is None:
        max_concurrency = settings.get('max_concurrency')
    semaphore = asyncio.Semaphore(max_concurrency) if max_concurrency else None

    async def run(statement: Statement):
        logger.debug(f"Executing on {statement.table}: {statement.sql}")
        if semaphore is None:
            return await query(statement.sql)
        async with semaphore:
            return await query(statement.sql)

    async def run_group(statements: List[Statement]):
        return await asyncio.gather(*(run(s) for s in statements), return_exceptions=True)

    async def run_table(groups: List[List[Statement]]):
        return await asyncio.gather(*(run_group(statements) for statements in groups))

    statements = flatten(plan)
    logger.debug(f"Dispatching {len(statements):,} statements for {len(plan)} tables")
    results = flatten(await asyncio.gather(*(run_table(groups) for groups in plan)))

    failures = [(s, r) for s, r in zip(statements, results) if isinstance(r, BaseException)]
    if failures:
        statement, error = failures[0]
        logger.error(
            f"{len(failures)} of {len(statements)} statements failed; first failure on "
            f"{statement.table}: {error}")
        if isinstance(error, ExecutionError):
            raise error
        raise ExecutionError(str(error), sql=statement.sql) from error
    return results


async def execute_query_queue(
    tables: Dict[str, List[TableGroup]],
    build_statements: StatementFactory,
    query: QueryFunc,
    max_concurrency: Optional[int] = None,
) -> List[QueryResult]:
    """
    Build and run statements for every group concurrently.

    All statements are built before any is sent, so a ConstructionError
    from ``build_statements`` means nothing reached the database.

    Example
    -------
    ::

        tables = TableGrouper(lambda i: 'water_tribe').group(records)
        results = await execute_query_queue(tables, StatementBuilder().insert, conn.query)
        print(sum_rows_affected(results))
    """
    plan = build_plan(tables, build_statements)
    return await run_plan(plan, query, max_concurrency=max_concurrency)
