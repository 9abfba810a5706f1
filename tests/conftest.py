# tests/conftest.py
"""
Shared test fixtures and configuration for pytest.
"""

import asyncio
import copy
import os
import re
from pathlib import Path
from unittest.mock import patch

import pytest

from dbstep import defaults
from dbstep.connection import QueryResult
from dbstep.exceptions import ExecutionError
from dbstep.utils import reset_format_cache

TEST_KEY = '2YvTXI9DHQPy4d6-ZC9NxcypvLMsJ94OBdmoHyjmwbM='


# Set test config file and encryption key for all tests
@pytest.fixture(autouse=True)
def setup_test_config():
    """Use tests/test.yml and a fixed encryption key; restore global settings afterwards."""
    from dbstep.config import set_config_file

    saved = copy.deepcopy(defaults.settings)
    with patch.dict(os.environ, {'DBSTEP_ENCRYPTION_KEY': TEST_KEY}):
        set_config_file(str(Path(__file__).parent / 'test.yml'))
        yield
    defaults.settings.clear()
    defaults.settings.update(saved)
    reset_format_cache()


class FakeConnection:
    """
    In-memory stand-in for AsyncConnection.

    Records every SQL text it receives. Statements matching ``fail_on`` raise
    ExecutionError; the rest report ``rows_per_statement`` affected rows
    (or the number of VALUES tuples / IN-list entries when None).
    """

    def __init__(self, fail_on=None, rows_per_statement=None, recordsets=None, delay=0.0):
        self.fail_on = re.compile(fail_on) if fail_on else None
        self.rows_per_statement = rows_per_statement
        self.recordsets = recordsets or []
        self.delay = delay
        self.queries = []
        self.connect_calls = 0
        self.close_calls = 0
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def is_open(self):
        return self.connect_calls > self.close_calls

    async def connect(self):
        self.connect_calls += 1
        return self

    async def close(self):
        self.close_calls += 1

    @staticmethod
    def _count_rows(sql):
        if sql.startswith('INSERT'):
            return sql.count('),(') + 1
        if sql.startswith('DELETE'):
            return sql.count(',') + 1
        return 1

    async def query(self, sql):
        self.queries.append(sql)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            if self.fail_on and self.fail_on.search(sql):
                raise ExecutionError(f"Violation of PRIMARY KEY constraint: {sql[:40]}", sql=sql)
            if self.recordsets:
                return QueryResult(recordsets=self.recordsets,
                                   rows_affected=[len(rs) for rs in self.recordsets])
            rows = self.rows_per_statement
            if rows is None:
                rows = self._count_rows(sql)
            return QueryResult(rows_affected=[rows])
        finally:
            self.in_flight -= 1


@pytest.fixture
def fake_connection():
    return FakeConnection()


@pytest.fixture
def sample_records():
    """Team Avatar roster."""
    return [
        {'id': 1, 'name': 'Aang', 'nation': 'Air', 'age': 112},
        {'id': 2, 'name': 'Katara', 'nation': 'Water', 'age': 14},
        {'id': 3, 'name': 'Sokka', 'nation': 'Water', 'age': 15},
        {'id': 4, 'name': 'Toph', 'nation': 'Earth', 'age': 12},
    ]


@pytest.fixture
def sqlite_db(tmp_path):
    """Path to a sqlite database with an empty ``team_avatar`` table."""
    import sqlite3

    db_path = tmp_path / 'ba_sing_se.db'
    conn = sqlite3.connect(str(db_path))
    conn.execute("CREATE TABLE team_avatar (id INTEGER PRIMARY KEY, name TEXT, nation TEXT, age INTEGER)")
    conn.commit()
    conn.close()
    return str(db_path)
