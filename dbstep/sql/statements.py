# dbstep/sql/statements.py
"""
Build INSERT, UPDATE and DELETE statements from table groups.

Statements are literal SQL text (see :mod:`dbstep.sql.values`). Inserts and
deletes are chunked so that no single statement carries more than
``chunk_size`` rows or keys; updates are one statement per record because
every row has its own SET values and WHERE key.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..defaults import settings
from ..exceptions import ConfigurationError, ConstructionError
from ..utils import chunk
from .grouping import TableGroup
from .values import extract_condition, extract_delete_values, extract_update_set, extract_values, render_value

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1000


@dataclass(frozen=True)
class Statement:
    """Generated SQL text plus the group and chunk it came from."""
    sql: str
    table: str
    key: Optional[str] = None
    chunk: int = 0
    rows: int = 0

    def __str__(self) -> str:
        return self.sql


class StatementBuilder:
    """
    Turn a :class:`TableGroup` into SQL statements.

    Example
    -------
    ::

        builder = StatementBuilder()
        for statement in builder.insert(group):
            print(statement.sql)
        # INSERT INTO earth_kingdom(id,name) VALUES (1,'Toph'),(2,'Bumi');
    """

    OPERATIONS = ('insert', 'update', 'delete')

    def __init__(self, chunk_size: Optional[int] = None, strict_columns: Optional[bool] = None):
        """
        Args:
            chunk_size: Max rows per INSERT and keys per DELETE. Defaults to the
                ``chunk_size`` setting (1000).
            strict_columns: Raise ConstructionError when a record lacks one of its
                group's columns instead of writing NULL. Defaults to the
                ``strict_columns`` setting.
        """
        if chunk_size is None:
            chunk_size = settings.get('chunk_size') or DEFAULT_CHUNK_SIZE
        try:
            chunk_size = int(chunk_size)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Invalid chunk size: {chunk_size!r}")
        if chunk_size < 1:
            raise ConfigurationError(f"Chunk size must be at least 1, got {chunk_size}")
        self.chunk_size = chunk_size
        if strict_columns is None:
            strict_columns = bool(settings.get('strict_columns', False))
        self.strict_columns = strict_columns

    def __repr__(self) -> str:
        return f"StatementBuilder(chunk_size={self.chunk_size}, strict_columns={self.strict_columns})"

    def _check_columns(self, group: TableGroup, columns: List[str], record, index: int) -> None:
        missing = [col for col in columns if col not in record]
        if not missing:
            return
        if self.strict_columns:
            raise ConstructionError(
                f"Item {index} for table {group.table} is missing columns {missing}")
        logger.debug(f"Item {index} for table {group.table} has no value for {missing}, writing NULL")

    def _require_key_values(self, group: TableGroup) -> None:
        if not group.key:
            raise ConstructionError(f"No key field defined for table {group.table}")
        for row in group.rows:
            if row.key_value is None:
                raise ConstructionError(
                    f"Item {row.index} for table {group.table} has no value for key '{group.key}'")

    def insert(self, group: TableGroup) -> List[Statement]:
        """One ``INSERT ... VALUES (...),(...);`` per chunk of rows."""
        if not group.columns:
            raise ConstructionError(f"Cannot create INSERT for table {group.table}: no columns")

        column_str = ','.join(group.columns)
        statements = []
        for number, rows in enumerate(chunk(group.rows, self.chunk_size)):
            values = []
            for row in rows:
                self._check_columns(group, group.columns, row.record, row.index)
                values.append(extract_values(row.record, group.columns))
            sql = f"INSERT INTO {group.table}({column_str}) VALUES {','.join(values)};"
            statements.append(Statement(sql, group.table, None, number, len(rows)))
        logger.debug(f"Built {len(statements)} INSERT statements for {group.table} ({len(group):,} rows)")
        return statements

    def update(self, group: TableGroup) -> List[Statement]:
        """One ``UPDATE ... SET ... WHERE key=value;`` per row."""
        self._require_key_values(group)
        set_columns = [col for col in group.columns if col != group.key]
        if not set_columns:
            raise ConstructionError(f"Cannot create UPDATE for table {group.table}: no columns to set")

        statements = []
        for number, row in enumerate(group.rows):
            self._check_columns(group, set_columns, row.record, row.index)
            set_clause = extract_update_set(row.record, set_columns)
            condition = extract_condition(group.key, row.key_value)
            sql = f"UPDATE {group.table} SET {set_clause} WHERE {condition};"
            statements.append(Statement(sql, group.table, group.key, number, 1))
        logger.debug(f"Built {len(statements)} UPDATE statements for {group.table}")
        return statements

    def delete(self, group: TableGroup) -> List[Statement]:
        """One ``DELETE ... WHERE key IN (...);`` per chunk of distinct key values."""
        self._require_key_values(group)

        # dedupe on the rendered literal so 3 and '3' stay distinct
        distinct: Dict[str, Any] = {}
        for value in group.key_values:
            distinct.setdefault(render_value(value), value)

        statements = []
        for number, values in enumerate(chunk(distinct.values(), self.chunk_size)):
            sql = f"DELETE FROM {group.table} WHERE {group.key} IN {extract_delete_values(values)};"
            statements.append(Statement(sql, group.table, group.key, number, len(values)))
        logger.debug(
            f"Built {len(statements)} DELETE statements for {group.table} "
            f"({len(distinct):,} distinct keys from {len(group):,} rows)")
        return statements

    def build(self, operation: str, group: TableGroup) -> List[Statement]:
        """Build statements for ``operation`` ('insert', 'update' or 'delete')."""
        if operation not in self.OPERATIONS:
            raise ConfigurationError(f"Invalid operation '{operation}'. Must be one of {self.OPERATIONS}")
        return getattr(self, operation)(group)
