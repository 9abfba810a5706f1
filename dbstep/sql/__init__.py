# dbstep/sql/__init__.py
"""
Record-to-SQL engine.

- TableGrouper: route records to table groups by table, key field and columns
- StatementBuilder: INSERT / UPDATE / DELETE text per group, chunked
- execute_query_queue: run statements concurrently and collect results
- render_value / extract_values: literal SQL text for record values

Example
-------
::

    from dbstep.sql import TableGrouper, StatementBuilder, execute_query_queue, sum_rows_affected

    tables = TableGrouper(lambda i: 'water_tribe', lambda i: 'id,name').group(records)
    results = await execute_query_queue(tables, StatementBuilder().insert, conn.query)
    print(sum_rows_affected(results))
"""

from .values import render_value, extract_values, extract_update_set, extract_condition, extract_delete_values
from .grouping import TableGrouper, TableGroup, GroupRow
from .statements import StatementBuilder, Statement, DEFAULT_CHUNK_SIZE
from .queue import execute_query_queue, build_plan, run_plan, sum_rows_affected

__all__ = [
    'render_value', 'extract_values', 'extract_update_set', 'extract_condition', 'extract_delete_values',
    'TableGrouper', 'TableGroup', 'GroupRow',
    'StatementBuilder', 'Statement', 'DEFAULT_CHUNK_SIZE',
    'execute_query_queue', 'build_plan', 'run_plan', 'sum_rows_affected',
]
