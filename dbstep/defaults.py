# dbstep/defaults.py
"""Default settings - no imports to avoid circular dependencies."""

settings = {
    'chunk_size': 1000,          # max rows per INSERT / keys per DELETE statement
    'strict_columns': False,     # raise instead of writing NULL for missing columns
    'max_concurrency': None,     # cap on outstanding statements, None = unlimited
    'pool_size': 4,              # driver connections opened by AsyncConnection
    'default_db_type': 'sqlserver',
    'default_update_key': 'id',
    'default_delete_key': 'id',
    'date_format': '%Y-%m-%d',
    'time_format': '%H:%M:%S',
    'datetime_format': '%Y-%m-%d %H:%M:%S',
    'timestamp_format': '%Y-%m-%d %H:%M:%S.%f',  # with microseconds
    'tz_suffix': '%z',
    'logging': {
        'directory': './logs',
        'level': 'INFO',
        'format': '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        'timestamp_format': '%Y-%m-%d %H:%M:%S',
        'filename_format': '%Y%m%d_%H%M%S',  # Set to '' for single log file (no timestamp)
        'split_errors': True,
        'console': True,
        'retention_days': 30,
    }
}
