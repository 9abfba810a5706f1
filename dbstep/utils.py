# dbstep/utils.py
"""
Utility functions for dbstep.
"""

import datetime as dt
import itertools
import re
from typing import Any, Iterable, List, Sequence, Union

from .defaults import settings
from .exceptions import ConfigurationError

MIDNIGHT = dt.time(0, 0, 0)
# cache format strings for performance
_format_cache = None


def _build_format_strings():
    """Build format strings for datetime and date objects."""
    return {
        'date': settings.get('date_format', '%Y-%m-%d'),
        'datetime': settings.get('datetime_format', '%Y-%m-%d %H:%M:%S'),
        'datetime_tz': settings.get('datetime_format', '%Y-%m-%d %H:%M:%S') + \
                       settings.get('tz_suffix', '%z'),
        'timestamp': settings.get('timestamp_format', '%Y-%m-%d %H:%M:%S.%f'),
        'timestamp_tz': settings.get('timestamp_format', '%Y-%m-%d %H:%M:%S.%f') + \
                        settings.get('tz_suffix', '%z'),
        'time': settings.get('time_format', '%H:%M:%S'),
        'time_micro': settings.get('time_format', '%H:%M:%S') + '.%f',
    }


def reset_format_cache():
    """Clear format cache to force rebuilding on next call."""
    global _format_cache
    _format_cache = None


def _get_format_strings():
    global _format_cache
    if _format_cache is None:
        _format_cache = _build_format_strings()
    return _format_cache


def to_string(obj: Any) -> str:
    """
    Convert a value to string representation.

    Dates and times are formatted with the configured formats, which default
    to ISO 8601 text that SQL Server parses without a style hint.

    Args:
        obj: Value to convert

    Returns:
        String representation ('' for None)
    """
    fmts = _get_format_strings()
    if obj is None:
        return ''
    elif isinstance(obj, dt.datetime):
        if obj.microsecond:
            if obj.tzinfo:
                return obj.strftime(fmts['timestamp_tz'])
            else:
                return obj.strftime(fmts['timestamp'])
        else:
            if obj.tzinfo:
                return obj.strftime(fmts['datetime_tz'])
            if obj.time() == MIDNIGHT:
                return obj.strftime(fmts['date'])
            else:
                return obj.strftime(fmts['datetime'])
    elif isinstance(obj, dt.date):
        return obj.strftime(fmts['date'])
    elif isinstance(obj, dt.time):
        if obj.microsecond:
            return obj.strftime(fmts['time_micro'])
        return obj.strftime(fmts['time'])
    elif isinstance(obj, str):
        return obj
    else:
        return str(obj)


# a bracketed part or a plain run of characters up to the next dot
_NAME_PART = re.compile(r'\[[^\[\]]*\]|[^.\[\]]*')


def _split_qualified(identifier: str) -> List[str]:
    parts, pos = [], 0
    while True:
        match = _NAME_PART.match(identifier, pos)
        parts.append(match.group())
        pos = match.end()
        if pos == len(identifier):
            return parts
        if identifier[pos] != '.':
            raise ConfigurationError(f"Invalid identifier: unbalanced brackets: {identifier}")
        pos += 1


def validate_identifier(identifier: str, max_length: int = 128) -> str:
    """
    Validate that a table, column or key name is safe to splice into SQL.
    Returns the identifier if valid, raises ConfigurationError if invalid.

    Qualified names like ``dbo.users`` are validated part by part. A part
    wrapped in square brackets, as in ``[dbo].[Order Details]``, may hold
    spaces, dots and punctuation but not ``]`` or control characters.
    """
    if not isinstance(identifier, str):
        raise ConfigurationError(f"Invalid identifier: expected a string, got {identifier!r}")

    parts = _split_qualified(identifier)
    if len(parts) > 1:
        return '.'.join(validate_identifier(part, max_length) for part in parts)

    if not identifier:
        raise ConfigurationError("Invalid identifier: cannot be empty")

    if identifier.startswith('['):
        name = identifier[1:-1]
        if not name.strip():
            raise ConfigurationError(f"Invalid identifier: empty brackets: {identifier}")
        if len(name) > max_length:
            raise ConfigurationError(f"Invalid identifier: exceeds max length of {max_length}")
        for pattern in ('\x00', '\n', '\r', '\x1a'):
            if pattern in name:
                raise ConfigurationError(
                    f"Invalid identifier: contains dangerous pattern {pattern!r}: {identifier}")
        return identifier

    if not (identifier[0].isalpha() or identifier[0] in '_#@'):
        raise ConfigurationError(f"Invalid identifier: must start with a letter: {identifier}")
    if len(identifier) > max_length:
        raise ConfigurationError(f"Invalid identifier: exceeds max length of {max_length}")

    # Characters/sequences that could enable injection or break SQL parsing
    dangerous_patterns = ['\x00', '\n', '\r', '"', "'", ';', '\x1a', '--', '/*', '*/', '[', ']', ' ', '(', ')', ',']
    for pattern in dangerous_patterns:
        if pattern in identifier:
            raise ConfigurationError(
                f"Invalid identifier: contains dangerous pattern {pattern!r}: {identifier}")

    return identifier


def parse_columns(columns: Union[str, Sequence[str], None]) -> List[str]:
    """
    Split a comma separated column list.

    Whitespace around names is trimmed and empty entries are dropped, so
    ``'id, name,'`` and ``['id', 'name']`` both give ``['id', 'name']``.
    """
    if columns is None:
        return []
    if isinstance(columns, str):
        columns = columns.split(',')
    return [col.strip() for col in columns if col is not None and str(col).strip()]


def chunk(items: Iterable[Any], size: int) -> Iterable[List[Any]]:
    """
    Split an iterable into lists of at most ``size`` items.

    Args:
        items: The iterable to split
        size: Size of each chunk

    Yields:
        Lists of items up to size length, in input order
    """
    if size < 1:
        raise ValueError(f"Chunk size must be at least 1, got {size}")

    iterator = iter(items)
    while True:
        batch = list(itertools.islice(iterator, size))
        if not batch:
            break
        yield batch


def flatten(nested: Iterable[Any]) -> List[Any]:
    """
    Flatten arbitrarily nested lists/tuples into one flat list.

    Example
    -------
    ::

        >>> flatten([1, [2, [3, 4]], (5,)])
        [1, 2, 3, 4, 5]
    """
    flat = []
    stack = [iter(nested)]
    while stack:
        for item in stack[-1]:
            if isinstance(item, (list, tuple)):
                stack.append(iter(item))
                break
            flat.append(item)
        else:
            stack.pop()
    return flat
