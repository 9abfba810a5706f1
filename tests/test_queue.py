# tests/test_queue.py
import pytest

from dbstep.connection import QueryResult
from dbstep.exceptions import ConstructionError, ExecutionError
from dbstep.sql.grouping import TableGrouper
from dbstep.sql.queue import build_plan, execute_query_queue, run_plan, sum_rows_affected
from dbstep.sql.statements import StatementBuilder

from conftest import FakeConnection


def nation_tables(records):
    return TableGrouper(lambda i: 'nation_' + records[i]['nation'].lower(), lambda i: 'id,name').group(records)


class TestSumRowsAffected:
    """Test aggregation of affected-row counts."""

    def test_lists_and_ints(self):
        results = [QueryResult(rows_affected=[2]), QueryResult(rows_affected=[1, 3]), QueryResult()]
        assert sum_rows_affected(results) == 6

    def test_nested(self):
        assert sum_rows_affected([[QueryResult(rows_affected=[5])], [[QueryResult(rows_affected=[1])]]]) == 6

    def test_empty(self):
        assert sum_rows_affected([]) == 0


class TestBuildPlan:
    """Test statement planning."""

    def test_nested_by_table_and_group(self, sample_records):
        plan = build_plan(nation_tables(sample_records), StatementBuilder().insert)
        assert len(plan) == 3
        assert [len(groups) for groups in plan] == [1, 1, 1]
        assert plan[1][0][0].sql == "INSERT INTO nation_water(id,name) VALUES (2,'Katara'),(3,'Sokka');"

    def test_construction_error_before_dispatch(self, sample_records):
        """Test a construction failure in any group stops the whole plan."""
        records = sample_records + [{'id': None, 'name': 'Appa', 'nation': 'Air'}]
        tables = TableGrouper(lambda i: 'team_avatar', lambda i: 'name', lambda i: 'id').group(records)
        with pytest.raises(ConstructionError):
            build_plan(tables, StatementBuilder().update)


class TestExecuteQueryQueue:
    """Test concurrent dispatch and result collection."""

    @pytest.mark.asyncio
    async def test_all_statements_sent(self, sample_records, fake_connection):
        """Test one statement per table group is sent and counts are summed."""
        results = await execute_query_queue(nation_tables(sample_records), StatementBuilder().insert,
                                            fake_connection.query)

        assert len(results) == 3
        assert sum_rows_affected(results) == 4
        assert sorted(fake_connection.queries) == sorted([
            "INSERT INTO nation_air(id,name) VALUES (1,'Aang');",
            "INSERT INTO nation_water(id,name) VALUES (2,'Katara'),(3,'Sokka');",
            "INSERT INTO nation_earth(id,name) VALUES (4,'Toph');",
        ])

    @pytest.mark.asyncio
    async def test_statements_run_concurrently(self):
        """Test statements are outstanding at the same time."""
        conn = FakeConnection(delay=0.01)
        records = [{'id': i, 'name': f'soldier {i}'} for i in range(6)]
        tables = TableGrouper(lambda i: 'fire_nation_army', lambda i: 'name', lambda i: 'id').group(records)

        results = await execute_query_queue(tables, StatementBuilder().update, conn.query)

        assert len(results) == 6
        assert conn.max_in_flight == 6

    @pytest.mark.asyncio
    async def test_max_concurrency(self):
        """Test the semaphore caps statements in flight."""
        conn = FakeConnection(delay=0.01)
        records = [{'id': i, 'name': f'soldier {i}'} for i in range(6)]
        tables = TableGrouper(lambda i: 'fire_nation_army', lambda i: 'name', lambda i: 'id').group(records)

        await execute_query_queue(tables, StatementBuilder().update, conn.query, max_concurrency=2)

        assert len(conn.queries) == 6
        assert conn.max_in_flight == 2

    @pytest.mark.asyncio
    async def test_failure_raised_after_all_complete(self):
        """Test one rejected statement does not stop the others, and surfaces afterwards."""
        conn = FakeConnection(fail_on=r'WHERE id=2;')
        records = [{'id': i, 'name': f'monk {i}'} for i in range(5)]
        tables = TableGrouper(lambda i: 'air_temple', lambda i: 'name', lambda i: 'id').group(records)

        with pytest.raises(ExecutionError, match='PRIMARY KEY') as exc_info:
            await execute_query_queue(tables, StatementBuilder().update, conn.query)

        assert len(conn.queries) == 5
        assert exc_info.value.sql == "UPDATE air_temple SET name='monk 2' WHERE id=2;"

    @pytest.mark.asyncio
    async def test_first_failure_in_submission_order(self):
        conn = FakeConnection(fail_on=r'WHERE id=[13];')
        records = [{'id': i, 'name': 'x'} for i in range(5)]
        tables = TableGrouper(lambda i: 't', lambda i: 'name', lambda i: 'id').group(records)

        with pytest.raises(ExecutionError) as exc_info:
            await execute_query_queue(tables, StatementBuilder().update, conn.query)
        assert exc_info.value.sql.endswith('WHERE id=1;')

    @pytest.mark.asyncio
    async def test_driver_error_wrapped(self):
        """Test non-dbstep exceptions from the query function become ExecutionError."""
        async def query(sql):
            raise RuntimeError('connection reset by Ba Sing Se')

        tables = TableGrouper(lambda i: 't', lambda i: 'id').group([{'id': 1}])
        with pytest.raises(ExecutionError, match='connection reset') as exc_info:
            await execute_query_queue(tables, StatementBuilder().insert, query)
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_nothing_sent_on_construction_error(self, fake_connection):
        records = [{'id': 1, 'name': 'Aang'}, {'name': 'Appa'}]
        tables = TableGrouper(lambda i: 't', key_lookup=lambda i: 'id').group(records)

        with pytest.raises(ConstructionError):
            await execute_query_queue(tables, StatementBuilder().delete, fake_connection.query)
        assert fake_connection.queries == []

    @pytest.mark.asyncio
    async def test_run_plan_empty(self, fake_connection):
        assert await run_plan([], fake_connection.query) == []
