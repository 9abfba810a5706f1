# tests/test_statements.py
import pytest

from dbstep import defaults
from dbstep.exceptions import ConfigurationError, ConstructionError
from dbstep.sql.grouping import TableGroup, GroupRow, TableGrouper
from dbstep.sql.statements import StatementBuilder, Statement


def make_group(records, columns, key=None, table='t'):
    rows = [GroupRow(i, rec, rec.get(key) if key else None) for i, rec in enumerate(records)]
    return TableGroup(table, columns, key=key, rows=rows)


class TestInsert:
    """Test INSERT statement construction."""

    def test_multi_row_insert(self):
        """Test two records become one multi-row INSERT."""
        records = [{'table': 't', 'id': 1, 'name': 'a'}, {'table': 't', 'id': 2, 'name': 'b'}]
        tables = TableGrouper(lambda i: records[i]['table'], lambda i: 'id,name').group(records)

        statements = StatementBuilder().insert(tables['t'][0])

        assert [s.sql for s in statements] == ["INSERT INTO t(id,name) VALUES (1,'a'),(2,'b');"]
        assert statements[0].rows == 2

    def test_chunks_at_1000_rows(self):
        """Test 2500 rows split into chunks of 1000, 1000 and 500."""
        records = [{'id': i} for i in range(2500)]
        statements = StatementBuilder().insert(make_group(records, ['id']))

        assert [s.rows for s in statements] == [1000, 1000, 500]
        assert [s.chunk for s in statements] == [0, 1, 2]
        assert statements[0].sql.count('),(') == 999
        assert statements[1].sql.startswith('INSERT INTO t(id) VALUES (1000),(1001)')
        assert statements[2].sql.endswith('(2499);')

    def test_exactly_chunk_size(self):
        """Test 1000 rows fit in a single statement."""
        statements = StatementBuilder().insert(make_group([{'id': i} for i in range(1000)], ['id']))
        assert len(statements) == 1

    def test_custom_chunk_size(self):
        statements = StatementBuilder(chunk_size=2).insert(make_group([{'id': i} for i in range(5)], ['id']))
        assert [s.sql for s in statements] == [
            'INSERT INTO t(id) VALUES (0),(1);',
            'INSERT INTO t(id) VALUES (2),(3);',
            'INSERT INTO t(id) VALUES (4);',
        ]

    def test_chunk_size_from_settings(self):
        defaults.settings['chunk_size'] = 3
        assert StatementBuilder().chunk_size == 3

    def test_zero_columns(self):
        """Test a group with no columns cannot be inserted."""
        with pytest.raises(ConstructionError, match='no columns'):
            StatementBuilder().insert(make_group([{}], []))

    def test_missing_field_writes_null(self):
        """Test a record lacking a group column gets NULL by default."""
        group = make_group([{'id': 1, 'name': 'Aang'}, {'id': 2}], ['id', 'name'])
        statements = StatementBuilder().insert(group)
        assert statements[0].sql == "INSERT INTO t(id,name) VALUES (1,'Aang'),(2,NULL);"

    def test_strict_columns(self):
        """Test strict mode rejects a record lacking a group column."""
        group = make_group([{'id': 1, 'name': 'Aang'}, {'id': 2}], ['id', 'name'])
        with pytest.raises(ConstructionError, match="missing columns \\['name'\\]"):
            StatementBuilder(strict_columns=True).insert(group)

    def test_explicit_none_is_not_missing(self):
        """Test strict mode accepts a present field whose value is None."""
        group = make_group([{'id': 1, 'name': None}], ['id', 'name'])
        statements = StatementBuilder(strict_columns=True).insert(group)
        assert statements[0].sql == 'INSERT INTO t(id,name) VALUES (1,NULL);'


class TestUpdate:
    """Test UPDATE statement construction."""

    def test_one_statement_per_record(self):
        """Test each record yields its own UPDATE with the key in WHERE."""
        records = [{'id': 1, 'name': 'Zuko', 'rank': 'Prince'}, {'id': 2, 'name': "Iroh's", 'rank': 'General'}]
        statements = StatementBuilder().update(make_group(records, ['name', 'rank'], key='id', table='fire_nation'))

        assert [s.sql for s in statements] == [
            "UPDATE fire_nation SET name='Zuko', rank='Prince' WHERE id=1;",
            "UPDATE fire_nation SET name='Iroh''s', rank='General' WHERE id=2;",
        ]
        assert all(s.key == 'id' and s.rows == 1 for s in statements)

    def test_key_not_in_set_clause(self):
        """Test the key field never appears in SET even if listed as a column."""
        statements = StatementBuilder().update(make_group([{'id': 1, 'name': 'Azula'}], ['id', 'name'], key='id'))
        assert statements[0].sql == "UPDATE t SET name='Azula' WHERE id=1;"

    def test_string_key(self):
        statements = StatementBuilder().update(make_group([{'code': 'EK', 'name': 'Earth'}], ['name'], key='code'))
        assert statements[0].sql == "UPDATE t SET name='Earth' WHERE code='EK';"

    @pytest.mark.parametrize('record', [{'name': 'Appa'}, {'id': None, 'name': 'Appa'}])
    def test_null_key_raises(self, record):
        """Test a null or missing key value never produces a statement."""
        group = make_group([{'id': 1, 'name': 'Aang'}, record], ['name'], key='id')
        with pytest.raises(ConstructionError, match="no value for key 'id'"):
            StatementBuilder().update(group)

    def test_no_set_columns(self):
        with pytest.raises(ConstructionError, match='no columns to set'):
            StatementBuilder().update(make_group([{'id': 1}], ['id'], key='id'))

    def test_no_key(self):
        with pytest.raises(ConstructionError, match='No key field'):
            StatementBuilder().update(make_group([{'id': 1, 'name': 'Aang'}], ['name']))


class TestDelete:
    """Test DELETE statement construction."""

    def test_deduplicates_keys(self):
        """Test duplicate key values appear once in the IN list."""
        group = make_group([{'id': 3}, {'id': 3}, {'id': 4}], [], key='id')
        statements = StatementBuilder().delete(group)
        assert [s.sql for s in statements] == ['DELETE FROM t WHERE id IN (3,4);']
        assert statements[0].rows == 2

    def test_number_and_string_keys_distinct(self):
        """Test 3 and '3' render differently and are both kept."""
        group = make_group([{'id': 3}, {'id': '3'}], [], key='id')
        assert StatementBuilder().delete(group)[0].sql == "DELETE FROM t WHERE id IN (3,'3');"

    def test_chunks_distinct_keys(self):
        """Test 2001 distinct keys split into chunks of 1000."""
        group = make_group([{'id': i % 2001} for i in range(3000)], [], key='id')
        statements = StatementBuilder().delete(group)
        assert [s.rows for s in statements] == [1000, 1000, 1]
        assert statements[2].sql == 'DELETE FROM t WHERE id IN (2000);'

    def test_null_key_raises(self):
        group = make_group([{'id': 1}, {'id': None}], [], key='id')
        with pytest.raises(ConstructionError):
            StatementBuilder().delete(group)


class TestBuilder:
    """Test StatementBuilder configuration and dispatch."""

    @pytest.mark.parametrize('size', [0, -1, 'lots'])
    def test_invalid_chunk_size(self, size):
        with pytest.raises(ConfigurationError):
            StatementBuilder(chunk_size=size)

    def test_build_dispatch(self):
        group = make_group([{'id': 9}], [], key='id')
        statements = StatementBuilder().build('delete', group)
        assert statements == [Statement('DELETE FROM t WHERE id IN (9);', 't', 'id', 0, 1)]
        assert str(statements[0]) == 'DELETE FROM t WHERE id IN (9);'

    def test_build_unknown_operation(self):
        with pytest.raises(ConfigurationError, match='Invalid operation'):
            StatementBuilder().build('upsert', make_group([{'id': 1}], ['id']))
