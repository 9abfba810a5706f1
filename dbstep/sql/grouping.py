# dbstep/sql/grouping.py
"""
Partition input records into table groups.

Every record resolves its own target table, column list and (for updates
and deletes) key field through lookups of the form ``index -> value``, so a
single batch can fan out to several tables. Records sharing the same table,
key field and column specification land in the same :class:`TableGroup`.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple, Union

from ..exceptions import ConfigurationError
from ..utils import parse_columns, validate_identifier

logger = logging.getLogger(__name__)

Lookup = Callable[[int], Any]
ColumnSpec = Union[str, Sequence[str], None]


class GroupRow(NamedTuple):
    """One input record routed to a group, with its position in the input batch."""
    index: int
    record: Mapping[str, Any]
    key_value: Any = None


@dataclass
class TableGroup:
    """
    Records destined for one table (and, for update/delete, one key field).

    The column list is fixed from the first record assigned to the group.
    """
    table: str
    columns: List[str]
    key: Optional[str] = None
    rows: List[GroupRow] = field(default_factory=list)

    @property
    def records(self) -> List[Mapping[str, Any]]:
        return [row.record for row in self.rows]

    @property
    def key_values(self) -> List[Any]:
        return [row.key_value for row in self.rows]

    def __len__(self) -> int:
        return len(self.rows)

    def __repr__(self) -> str:
        key = f", key={self.key!r}" if self.key else ''
        return f"TableGroup({self.table!r}{key}, {len(self.columns)} columns, {len(self.rows)} rows)"


class TableGrouper:
    """
    Group records by target table, key field and column specification.

    Example
    -------
    ::

        grouper = TableGrouper(lambda i: 'fire_nation_army',
                               columns_lookup=lambda i: 'soldier_id,name')
        tables = grouper.group(records)
        for table, groups in tables.items():
            for group in groups:
                print(group.table, group.columns, len(group))
    """

    def __init__(
        self,
        table_lookup: Lookup,
        columns_lookup: Optional[Lookup] = None,
        key_lookup: Optional[Lookup] = None,
    ):
        """
        Args:
            table_lookup: Resolves the table name for the record at an index.
            columns_lookup: Resolves the column spec (comma separated string or
                sequence) for an index. Empty means "every field of the first
                record in the group".
            key_lookup: Resolves the key field name for update/delete. When
                omitted, groups have no key and no key values are recorded.
        """
        self.table_lookup = table_lookup
        self.columns_lookup = columns_lookup
        self.key_lookup = key_lookup

    def _resolve_table(self, index: int) -> str:
        table = self.table_lookup(index)
        if table is None or not str(table).strip():
            raise ConfigurationError(f"No table name given for item {index}")
        return validate_identifier(str(table).strip())

    def _resolve_key(self, index: int) -> Optional[str]:
        if self.key_lookup is None:
            return None
        key = self.key_lookup(index)
        if key is None or not str(key).strip():
            raise ConfigurationError(f"No key field given for item {index}")
        return validate_identifier(str(key).strip())

    def _resolve_columns(self, index: int) -> Tuple[str, ...]:
        if self.columns_lookup is None:
            return ()
        return tuple(parse_columns(self.columns_lookup(index)))

    @staticmethod
    def _default_columns(record: Mapping[str, Any], key: Optional[str]) -> List[str]:
        return [validate_identifier(col) for col in record.keys() if col != key]

    def group(self, records: Sequence[Mapping[str, Any]]) -> Dict[str, List[TableGroup]]:
        """
        Group records, preserving first-insertion order of tables and groups.

        Returns:
            Mapping of table name to its groups, in the order first seen.

        Raises:
            ConfigurationError: If a table or key name is missing or invalid.
        """
        tables: Dict[str, Dict[Tuple[Optional[str], Tuple[str, ...]], TableGroup]] = {}

        for index, record in enumerate(records):
            table = self._resolve_table(index)
            key = self._resolve_key(index)
            column_spec = self._resolve_columns(index)

            groups = tables.setdefault(table, {})
            group = groups.get((key, column_spec))
            if group is None:
                if column_spec:
                    columns = [validate_identifier(col) for col in column_spec if col != key]
                else:
                    columns = self._default_columns(record, key)
                group = TableGroup(table=table, columns=columns, key=key)
                groups[(key, column_spec)] = group
                logger.debug(f"New group for {table}: key={key}, columns={columns}")

            key_value = record.get(key) if key is not None else None
            group.rows.append(GroupRow(index, record, key_value))

        result = {table: list(groups.values()) for table, groups in tables.items()}
        logger.debug(
            f"Grouped {len(records):,} records into "
            f"{sum(len(g) for g in result.values())} groups across {len(result)} tables")
        return result
