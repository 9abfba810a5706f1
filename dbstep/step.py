# dbstep/step.py
"""
The SQL workflow step: pick a flow from the operation name and run it.

A host workflow runtime hands :class:`SqlStep` a batch of records, an
operation name (``executeQuery``, ``insert``, ``update`` or ``delete``) and a
way to resolve parameters per item. The step opens the connection, groups
and builds statements, runs them, and turns the outcome into output records.
The connection is closed on every exit path.
"""

import functools
import logging
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from .defaults import settings
from .exceptions import ConfigurationError, DbStepError, ExecutionError
from .logging_utils import step_logger
from .sql.grouping import TableGrouper
from .sql.queue import build_plan, run_plan, sum_rows_affected
from .sql.statements import StatementBuilder
from .utils import flatten

logger = logging.getLogger(__name__)

GetParam = Callable[[str, int], Any]


class StepState(str, Enum):
    RECEIVING_INPUT = 'receiving_input'
    GROUPING = 'grouping'
    BUILDING = 'building'
    EXECUTING = 'executing'
    AGGREGATING = 'aggregating'
    DONE = 'done'
    FAILED = 'failed'


class ParamResolver:
    """
    Resolve step parameters per item index from a plain dict.

    Values may be constants (same for every item) or callables taking the
    item index. Names not given fall back to the defaults: ``columns`` is
    empty and ``updateKey`` / ``deleteKey`` come from settings (``'id'``).

    Example
    -------
    ::

        get_param = ParamResolver({
            'table': 'air_temple',
            'columns': 'id,name',
            'updateKey': ParamResolver.per_item(['id', 'monk_id', 'id']),
        })
        get_param('table', 2)      # 'air_temple'
        get_param('updateKey', 1)  # 'monk_id'
    """

    def __init__(self, params: Optional[Mapping[str, Any]] = None, defaults: Optional[Mapping[str, Any]] = None):
        self.params = dict(params or {})
        self.defaults = {
            'columns': '',
            'updateKey': settings.get('default_update_key', 'id'),
            'deleteKey': settings.get('default_delete_key', 'id'),
        }
        self.defaults.update(defaults or {})

    @staticmethod
    def per_item(values: List[Any]) -> Callable[[int], Any]:
        """Wrap a list of pre-resolved values, one per item."""
        def lookup(index: int) -> Any:
            try:
                return values[index]
            except IndexError:
                raise ConfigurationError(f"No parameter value for item {index}")
        return lookup

    def __call__(self, name: str, index: int) -> Any:
        if name in self.params:
            value = self.params[name]
            return value(index) if callable(value) else value
        return self.defaults.get(name)


class SqlStep:
    """
    Run one SQL operation for a batch of workflow items.

    Example
    -------
    ::

        conn = dbstep.connect('ba_sing_se')
        step = SqlStep(conn, {'table': 'earth_kingdom_census', 'columns': 'citizen_id,name,city'})
        output = await step.run(records, 'insert')
        # [{'rowsAffected': 3}]

    Attributes
    ----------
        state (StepState): Current pipeline stage; FAILED after an error.
        statements (int): Statements sent during the last run.
    """

    OPERATIONS = ('executeQuery', 'insert', 'update', 'delete')

    def __init__(
        self,
        connection,
        get_param: Union[GetParam, Mapping[str, Any], None] = None,
        continue_on_fail: bool = False,
        chunk_size: Optional[int] = None,
        strict_columns: Optional[bool] = None,
        max_concurrency: Optional[int] = None,
    ):
        """
        Args:
            connection: Object with async ``connect()``, ``query(sql)`` and ``close()``.
            get_param: Callable ``(name, index) -> value``, or a dict passed to
                :class:`ParamResolver`.
            continue_on_fail: Return ``[{'error': ...}]`` instead of raising.
            chunk_size: Max rows per INSERT / keys per DELETE (default 1000).
            strict_columns: Raise when a record lacks a group column.
            max_concurrency: Cap on statements in flight.
        """
        self.connection = connection
        if get_param is None or isinstance(get_param, Mapping):
            get_param = ParamResolver(get_param)
        self.get_param = get_param
        self.continue_on_fail = continue_on_fail
        self.builder = StatementBuilder(chunk_size=chunk_size, strict_columns=strict_columns)
        self.max_concurrency = max_concurrency
        self.state = StepState.RECEIVING_INPUT
        self.statements = 0
        self.log = step_logger(logger, getattr(connection, 'name', None), None)

    def _set_state(self, state: StepState) -> None:
        self.log.debug(f"{self.state.value} -> {state.value}")
        self.state = state

    def _lookup(self, name: str) -> Callable[[int], Any]:
        return functools.partial(self.get_param, name)

    def _grouper(self, operation: str) -> TableGrouper:
        if operation == 'insert':
            return TableGrouper(self._lookup('table'), self._lookup('columns'))
        elif operation == 'update':
            return TableGrouper(self._lookup('table'), self._lookup('columns'), self._lookup('updateKey'))
        return TableGrouper(self._lookup('table'), key_lookup=self._lookup('deleteKey'))

    async def run(self, records: Iterable[Mapping[str, Any]], operation: str) -> List[Dict[str, Any]]:
        """
        Open the connection, run ``operation`` and close the connection.

        Errors, including an unsupported operation, are returned as
        ``[{'error': message}]`` when ``continue_on_fail`` is set.

        Raises:
            ConfigurationError: Unsupported operation or missing/invalid parameter.
            ConstructionError: A group could not be turned into SQL.
            ExecutionError: The database rejected a statement.
        """
        records = list(records)
        self.state = StepState.RECEIVING_INPUT
        self.statements = 0
        self.log = step_logger(logger, getattr(self.connection, 'name', None), operation)

        await self.connection.connect()
        try:
            if operation not in self.OPERATIONS:
                raise ConfigurationError(f'The operation "{operation}" is not supported!')
            if operation == 'executeQuery':
                output = await self.execute_query()
            else:
                output = await self.write(records, operation)
            self._set_state(StepState.DONE)
            return output
        except Exception as e:
            self._set_state(StepState.FAILED)
            if self.continue_on_fail:
                self.log.warning(f"Failed, continuing: {e}")
                return [{'error': str(e)}]
            self.log.error(f"Failed: {e}")
            raise
        finally:
            await self.connection.close()

    async def execute_query(self) -> List[Dict[str, Any]]:
        """Run the raw ``query`` parameter; rows of all result sets become output records."""
        query = self.get_param('query', 0)
        if query is None or not str(query).strip():
            raise ConfigurationError("No query given for executeQuery")

        self._set_state(StepState.EXECUTING)
        self.statements = 1
        try:
            result = await self.connection.query(str(query))
        except DbStepError:
            raise
        except Exception as e:
            raise ExecutionError(str(e), sql=str(query)) from e

        self._set_state(StepState.AGGREGATING)
        if len(result.recordsets) > 1:
            rows = flatten(result.recordsets)
        else:
            rows = result.recordset
        self.log.info(f"Query returned {len(rows):,} rows")
        return [dict(row) for row in rows]

    async def write(self, records: List[Mapping[str, Any]], operation: str) -> List[Dict[str, Any]]:
        """Run an insert, update or delete flow and report the affected-row total."""
        self._set_state(StepState.GROUPING)
        tables = self._grouper(operation).group(records)

        self._set_state(StepState.BUILDING)
        plan = build_plan(tables, functools.partial(self.builder.build, operation))
        self.statements = sum(len(statements) for groups in plan for statements in groups)

        self._set_state(StepState.EXECUTING)
        results = await run_plan(plan, self.connection.query, max_concurrency=self.max_concurrency)

        self._set_state(StepState.AGGREGATING)
        rows_affected = sum_rows_affected(results)
        self.log.info(
            f"{operation.capitalize()} on {', '.join(tables) or 'no tables'}: "
            f"{rows_affected:,} rows affected by {self.statements:,} statements")
        return [{'rowsAffected': rows_affected}]

    async def insert(self, records: List[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        """Perform INSERT for records on an already open connection."""
        return await self.write(records, 'insert')

    async def update(self, records: List[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        """Perform UPDATE for records on an already open connection."""
        return await self.write(records, 'update')

    async def delete(self, records: List[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        """Perform DELETE for records on an already open connection."""
        return await self.write(records, 'delete')


async def run_step(
    connection,
    records: Iterable[Mapping[str, Any]],
    operation: str,
    params: Union[GetParam, Mapping[str, Any], None] = None,
    continue_on_fail: bool = False,
    **kwargs,
) -> List[Dict[str, Any]]:
    """Build a :class:`SqlStep` and run it once."""
    step = SqlStep(connection, params, continue_on_fail=continue_on_fail, **kwargs)
    return await step.run(records, operation)
