# dbstep/database.py
"""
Database connection wrapper that provides a uniform interface
to the SQL Server database adapters (and sqlite3 for local use).
"""

import importlib
import importlib.util
import logging
import os
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# users can define their own drivers in the config file
_user_drivers = {}


DRIVERS = {
    # SQL Server Drivers
    'pyodbc_sqlserver': {
        'database_type': 'sqlserver',
        'module': 'pyodbc',
        'priority': 11,
        'param_map': {'database': 'DATABASE', 'user': 'UID', 'password': 'PWD'},
        'required_params': [{'host', 'database', 'user'}, {'host', 'database', 'trusted_connection'}],
        'optional_params': {'password', 'port', 'driver', 'trusted_connection', 'encrypt', 'trustservercertificate'},
        'connection_method': 'odbc_string',
        'odbc_driver_name': 'ODBC Driver 18 for SQL Server',
        'default_port': 1433
    },
    'pymssql': {
        'database_type': 'sqlserver',
        'module': 'pymssql',
        'priority': 12,
        'param_map': {'host': 'server'},
        'required_params': [{'host', 'database', 'user'}],
        'optional_params': {'password', 'port', 'timeout', 'login_timeout', 'charset', 'appname', 'autocommit'},
        'connection_method': 'kwargs',
        'default_port': 1433
    },

    # SQLite Driver
    'sqlite3': {
        'database_type': 'sqlite',
        'module': 'sqlite3',
        'priority': 1,
        'param_map': {},
        'required_params': [{'database'}],
        'optional_params': {'timeout', 'detect_types', 'isolation_level', 'check_same_thread',
                            'cached_statements', 'uri'},
        'connection_method': 'kwargs'
    }
}


def register_user_drivers(drivers_config: dict) -> None:
    """Register drivers from config file."""
    _user_drivers.update(drivers_config)


def get_all_drivers() -> dict:
    """Get combined built-in and user drivers."""
    return {**DRIVERS, **_user_drivers}


def _module_name(driver_name: str) -> str:
    return get_all_drivers().get(driver_name, {}).get('module', driver_name)


def get_drivers_for_database(db_type: str, valid_only: bool = True) -> List[str]:
    """
    Gets a list of drivers available for the specified database type.

    Parameters:
        db_type (str): The type of database for which to retrieve drivers.
        valid_only (bool): Specifies whether to include only valid and importable
            drivers (default is True).

    Returns:
        List[str]: Driver names sorted by priority (lower is preferred).
    """
    all_drivers = get_all_drivers()
    available_drivers = []

    for driver_name, info in all_drivers.items():
        if info['database_type'] == db_type:
            if valid_only and importlib.util.find_spec(_module_name(driver_name)) is None:
                continue
            available_drivers.append(driver_name)

    def sort_key(driver_name):
        priority = all_drivers[driver_name]['priority']
        # User drivers get slight priority boost for tie-breaking
        if driver_name in _user_drivers:
            priority -= 0.5
        return priority

    available_drivers.sort(key=sort_key)
    return available_drivers


def get_params_for_database(db_type: str, driver: str = None) -> set:
    """Get all valid parameters for a database type from DRIVERS metadata."""
    valid_params = set()

    for driver_name, driver_info in get_all_drivers().items():
        if driver_info['database_type'] == db_type:
            if driver and driver_name != driver:
                continue
            for param_set in driver_info['required_params']:
                valid_params.update(param_set)
            valid_params.update(driver_info.get('optional_params', set()))

    return valid_params


def get_supported_db_types() -> set:
    """Get all supported database types."""
    return {info['database_type'] for info in get_all_drivers().values()}


def validate_connection_params(driver_name: str, **params) -> dict:
    """
    Validate connection parameters against driver requirements.

    Args:
        driver_name: Name of the database driver
        **params: Connection parameters

    Returns:
        Dict of validated parameters with extras removed and names mapped
        to what the driver expects

    Raises:
        ValueError: If the driver is unknown or required parameters are missing
    """
    all_drivers = get_all_drivers()
    if driver_name not in all_drivers:
        raise ValueError(f"Unknown driver: {driver_name}")

    driver_info = all_drivers[driver_name]
    params = {key: val for key, val in params.items() if val is not None}

    if 'port' not in params:
        default_port = driver_info.get('default_port')
        if default_port:
            params['port'] = default_port

    # Check required parameters (any one set must be satisfied)
    if not any(required_set.issubset(params.keys()) for required_set in driver_info['required_params']):
        raise ValueError(f"Missing required parameters. Need one of: {driver_info['required_params']}")

    param_map = driver_info.get('param_map', {})
    all_valid_params = set()
    for req_set in driver_info['required_params']:
        all_valid_params.update(req_set)
    all_valid_params.update(driver_info.get('optional_params', set()))

    return {param_map.get(key, key): value for key, value in params.items() if key in all_valid_params}


def get_odbc_connection_string(odbc_driver_name: Optional[str] = None, **kwargs) -> str:
    """Get connection string for ODBC from keyword arguments."""
    host = kwargs.pop('host', 'localhost')
    port = kwargs.pop('port', None)
    odbc_driver_name = kwargs.pop('driver', None) or odbc_driver_name
    params = {'SERVER': f'{host},{port}' if port else host}
    for key, value in kwargs.items():
        if isinstance(value, bool):
            value = 'yes' if value else 'no'
        params[key.upper()] = value
    conn_str = ";".join(f"{key}={value}" for key, value in params.items())
    if odbc_driver_name:
        return f"DRIVER={{{odbc_driver_name}}};{conn_str}"
    return conn_str


class Database:
    """
    Database connection wrapper that provides uniform interface
    across different database adapters.

    Attribute access not handled here (``cursor``, ``commit``, ``close``...)
    is delegated to the underlying DB-API connection.
    """

    # Attributes stored locally, others delegated to _connection
    _local_attrs = ['_connection', 'server_type', 'database_name', 'interface', 'name']

    def __init__(self, connection, interface, database_name: Optional[str] = None, server_type: Optional[str] = None):
        """
        Initialize Database wrapper.

        Args:
            connection: Underlying database connection object
            interface: Database adapter module (pyodbc, pymssql, sqlite3)
            database_name: Name of the database
            server_type: Database type; looked up from the driver registry if omitted
        """
        self._connection = connection
        self.interface = interface
        self.database_name = database_name
        self.name = None

        if server_type is None:
            server_type = 'unknown'
            for info in get_all_drivers().values():
                if info.get('module') == interface.__name__:
                    server_type = info['database_type']
                    break
        self.server_type = server_type

    def __getattr__(self, key: str) -> Any:
        """Delegate attribute access to underlying connection."""
        return getattr(self._connection, key)

    def __setattr__(self, key: str, value: Any) -> None:
        """Set attributes locally or delegate to connection."""
        if key in self._local_attrs:
            self.__dict__[key] = value
        else:
            setattr(self._connection, key, value)

    def __str__(self) -> str:
        if self.database_name:
            return f'Database({self.database_name}:{self.server_type})'
        return f'Database({self.server_type})'

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    @classmethod
    def create(cls, db_type: str, driver: str = None, **kwargs) -> 'Database':
        """
        Factory method to create database connections.

        Args:
            db_type: Database type ('sqlserver' or 'sqlite')
            driver: Preferred driver name from DRIVERS
            **kwargs: Connection parameters

        Returns:
            Database instance
        """
        all_drivers = get_all_drivers()
        db_driver = None
        driver_name = None
        if driver:
            if driver not in all_drivers:
                raise ValueError(f"Unknown driver: {driver}")
            if all_drivers[driver]['database_type'] != db_type:
                raise ValueError(f"Driver '{driver}' is not compatible with database type '{db_type}'")
            try:
                db_driver = importlib.import_module(_module_name(driver))
                driver_name = driver
            except ImportError:
                logger.warning(f"Driver '{driver}' not available, falling back to default")

        if db_driver is None:
            for name in get_drivers_for_database(db_type):
                try:
                    db_driver = importlib.import_module(_module_name(name))
                    driver_name = name
                    break
                except ImportError:
                    pass

        if db_driver is None:
            raise ImportError(f"No database driver found for database type '{db_type}'")

        params = validate_connection_params(driver_name, **kwargs)
        driver_conf = all_drivers[driver_name]
        database_name = kwargs.get('database')

        method = driver_conf['connection_method']
        if method == 'kwargs':
            connection = db_driver.connect(**params)
        elif method == 'odbc_string':
            connection = db_driver.connect(
                get_odbc_connection_string(driver_conf.get('odbc_driver_name'), **params))
        else:
            raise ValueError(f"Unsupported connection method '{method}' for driver {driver_name}")

        logger.debug(f"Connected to {db_type} database {database_name} using {driver_name}")
        return cls(connection, db_driver, database_name, server_type=db_type)


def sqlserver(user: Optional[str] = None, password: Optional[str] = None, database: str = None,
              host: str = 'localhost', port: int = 1433, driver: str = None, **kwargs) -> Database:
    """Create SQL Server connection."""
    return Database.create('sqlserver', driver=driver, user=user, password=password, database=database,
                           host=host, port=port, **kwargs)


def sqlite(database: str, **kwargs) -> Database:
    """Create SQLite connection."""
    import sqlite3

    connection = sqlite3.connect(database, **kwargs)
    return Database(connection, sqlite3, os.path.basename(database), server_type='sqlite')
