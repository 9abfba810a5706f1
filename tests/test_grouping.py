# tests/test_grouping.py
import pytest

from dbstep.exceptions import ConfigurationError
from dbstep.sql.grouping import TableGrouper, TableGroup, GroupRow


def const(value):
    return lambda index: value


def per_item(values):
    return lambda index: values[index]


class TestTableGrouper:
    """Test grouping of records by table, key and columns."""

    def test_single_table(self, sample_records):
        """Test one table with a fixed column list gives one group."""
        tables = TableGrouper(const('team_avatar'), const('id,name')).group(sample_records)

        assert list(tables) == ['team_avatar']
        group = tables['team_avatar'][0]
        assert group.columns == ['id', 'name']
        assert len(group) == 4
        assert [row.index for row in group.rows] == [0, 1, 2, 3]

    def test_multiple_tables_preserve_first_seen_order(self, sample_records):
        """Test records fan out to tables in first-seen order."""
        table_names = ['air_temple', 'water_tribe', 'water_tribe', 'earth_kingdom']
        tables = TableGrouper(per_item(table_names), const('id,name')).group(sample_records)

        assert list(tables) == ['air_temple', 'water_tribe', 'earth_kingdom']
        assert [r['name'] for r in tables['water_tribe'][0].records] == ['Katara', 'Sokka']

    def test_table_from_record_field(self, sample_records):
        """Test a lookup that reads the table from the record itself."""
        records = [dict(rec, table='nation_' + rec['nation'].lower()) for rec in sample_records]
        tables = TableGrouper(lambda i: records[i]['table'], const('id,name')).group(records)
        assert list(tables) == ['nation_air', 'nation_water', 'nation_earth']

    def test_different_column_specs_split_groups(self, sample_records):
        """Test same table with different column specs gives separate groups."""
        specs = ['id,name', 'id,name', 'id,nation', 'id, name']
        tables = TableGrouper(const('team_avatar'), per_item(specs)).group(sample_records)

        groups = tables['team_avatar']
        assert len(groups) == 2
        assert groups[0].columns == ['id', 'name']
        assert [row.index for row in groups[0].rows] == [0, 1, 3]
        assert groups[1].columns == ['id', 'nation']

    def test_key_groups(self, sample_records):
        """Test different key fields on the same table give separate groups."""
        keys = ['id', 'id', 'name', 'id']
        tables = TableGrouper(const('team_avatar'), key_lookup=per_item(keys)).group(sample_records)

        groups = tables['team_avatar']
        assert [g.key for g in groups] == ['id', 'name']
        assert groups[0].key_values == [1, 2, 4]
        assert groups[1].key_values == ['Sokka']

    def test_empty_columns_default_to_record_fields(self, sample_records):
        """Test an empty column spec uses the first record's fields minus the key."""
        tables = TableGrouper(const('team_avatar'), const(''), const('id')).group(sample_records)
        assert tables['team_avatar'][0].columns == ['name', 'nation', 'age']

    def test_key_excluded_from_columns(self, sample_records):
        """Test the key field is dropped from an explicit column list."""
        tables = TableGrouper(const('team_avatar'), const('id,name,age'), const('id')).group(sample_records)
        assert tables['team_avatar'][0].columns == ['name', 'age']

    def test_missing_key_value_recorded_as_none(self):
        """Test records without the key field carry a None key value."""
        records = [{'id': 1, 'name': 'Aang'}, {'name': 'Appa'}]
        tables = TableGrouper(const('team_avatar'), key_lookup=const('id')).group(records)
        assert tables['team_avatar'][0].key_values == [1, None]

    def test_empty_input(self):
        assert TableGrouper(const('team_avatar')).group([]) == {}

    @pytest.mark.parametrize('table', [None, '', '   '])
    def test_missing_table(self, sample_records, table):
        """Test a missing table name is a configuration error."""
        with pytest.raises(ConfigurationError, match='No table name'):
            TableGrouper(const(table)).group(sample_records)

    def test_missing_key(self, sample_records):
        """Test a blank key name is a configuration error."""
        with pytest.raises(ConfigurationError, match='No key field'):
            TableGrouper(const('team_avatar'), key_lookup=const('')).group(sample_records)

    def test_invalid_table_name(self, sample_records):
        """Test table names are validated as identifiers."""
        with pytest.raises(ConfigurationError):
            TableGrouper(const('team_avatar; DROP TABLE x')).group(sample_records)

    def test_invalid_column_name(self, sample_records):
        """Test column names are validated as identifiers."""
        with pytest.raises(ConfigurationError):
            TableGrouper(const('team_avatar'), const("id,name'--")).group(sample_records)


class TestTableGroup:
    """Test TableGroup container."""

    def test_repr_and_len(self):
        group = TableGroup('team_avatar', ['name'], key='id',
                           rows=[GroupRow(0, {'id': 1, 'name': 'Aang'}, 1)])
        assert len(group) == 1
        assert repr(group) == "TableGroup('team_avatar', key='id', 1 columns, 1 rows)"
        assert group.records == [{'id': 1, 'name': 'Aang'}]
