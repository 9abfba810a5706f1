# dbstep/sql/values.py
"""
Render record values as SQL literal text.

Statements built by dbstep carry their values inline rather than as bind
parameters, so every value passes through :func:`render_value`. Strings are
quoted with embedded quotes doubled; identifiers are never rendered here and
must be checked with :func:`dbstep.utils.validate_identifier`.
"""

import datetime as dt
import json
from decimal import Decimal
from typing import Any, Iterable, List, Mapping

from ..utils import to_string

NULL = 'NULL'


def quote_string(text: str) -> str:
    """Single-quote text, doubling any embedded single quotes."""
    return "'" + text.replace("'", "''") + "'"


def render_value(value: Any) -> str:
    """
    Convert one Python value to SQL literal text.

    Example
    -------
    ::

        >>> render_value("Ba Sing Se's wall")
        "'Ba Sing Se''s wall'"
        >>> render_value(None), render_value(True), render_value(42)
        ('NULL', '1', '42')
    """
    if value is None:
        return NULL
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return '1' if value else '0'
    if isinstance(value, (int, float, Decimal)):
        return str(value)
    if isinstance(value, str):
        return quote_string(value)
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return quote_string(to_string(value))
    if isinstance(value, (bytes, bytearray)):
        return '0x' + bytes(value).hex()
    if isinstance(value, (dict, list)):
        return quote_string(json.dumps(value, default=str))
    return quote_string(str(value))


def row_values(record: Mapping[str, Any], columns: Iterable[str]) -> List[str]:
    """Rendered literals for ``columns`` in order; absent fields become NULL."""
    return [render_value(record.get(col)) for col in columns]


def extract_values(record: Mapping[str, Any], columns: Iterable[str]) -> str:
    """Render one record as a VALUES tuple, e.g. ``(1,'Aang',NULL)``."""
    return '(' + ','.join(row_values(record, columns)) + ')'


def extract_update_set(record: Mapping[str, Any], columns: Iterable[str]) -> str:
    """Render a SET clause body, e.g. ``name='Zuko', rank='General'``."""
    return ', '.join(f'{col}={render_value(record.get(col))}' for col in columns)


def extract_condition(key: str, value: Any) -> str:
    """Render an equality condition on the key field."""
    return f'{key}={render_value(value)}'


def extract_delete_values(values: Iterable[Any]) -> str:
    """Render an IN list, e.g. ``(3,4)``."""
    return '(' + ','.join(render_value(value) for value in values) + ')'
