# dbstep/__init__.py
"""
dbstep - SQL Server step for workflow runtimes

Turns batches of workflow records into SQL and runs it:
- executeQuery: raw SQL, result rows become output records
- insert / update / delete: records grouped by table, key and columns,
  chunked into multi-row statements and executed concurrently
- YAML-based connection configuration with password encryption
- Timestamped log files for scheduled runs

Basic usage::

    import asyncio
    import dbstep

    conn = dbstep.connect('ba_sing_se')
    step = dbstep.SqlStep(conn, {'table': 'earth_kingdom_census', 'columns': 'citizen_id,name,city'})
    output = asyncio.run(step.run(records, 'insert'))
    # [{'rowsAffected': 3}]

Direct connections:
    from dbstep import AsyncConnection

    conn = AsyncConnection.create('sqlserver', host='db01', database='census',
                                  user='dai_li', password='...')
"""

__version__ = '0.3.0'

from .database import Database
from .connection import AsyncConnection, QueryResult
from .config import connect, set_config_file, get_setting, get_password
from .exceptions import DbStepError, ConfigurationError, ConstructionError, ExecutionError
from .step import SqlStep, ParamResolver, StepState, run_step
from .logging_utils import setup_logging, cleanup_old_logs, errors_logged
from . import sql

__all__ = [
    'connect',
    'config',
    'set_config_file',
    'get_setting',
    'get_password',
    'Database',
    'AsyncConnection',
    'QueryResult',
    'SqlStep',
    'ParamResolver',
    'StepState',
    'run_step',
    'sql',
    'DbStepError',
    'ConfigurationError',
    'ConstructionError',
    'ExecutionError',
    'setup_logging',
    'cleanup_old_logs',
    'errors_logged',
]
