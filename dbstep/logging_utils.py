# dbstep/logging_utils.py
"""
Logging for SQL step runs.

A scheduled run of ``dbstep run`` (or any script driving :class:`~dbstep.step.SqlStep`)
gets one log file per run, an error log that only appears when something
fails, and log lines tagged with the connection and operation that produced
them::

    2024-05-01 02:00:03 [INFO] dbstep.step: [census_db:insert] Insert on earth_kingdom_census: ...

Old run logs are pruned by :func:`cleanup_old_logs` using the
``logging.retention_days`` setting.
"""

import logging
import sys
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, List, MutableMapping, Optional, Tuple

from .defaults import settings

logger = logging.getLogger(__name__)


@dataclass
class RunLogs:
    """Where the current run is logging."""
    log_file: str
    error_file: Optional[str] = None
    counter: Optional['ErrorCountHandler'] = None


_current: Optional[RunLogs] = None


class StepLogAdapter(logging.LoggerAdapter):
    """
    Tag messages with the connection and operation of a step run.

    The tag is put in the message text so every handler shows it, and also
    in ``record.connection`` / ``record.operation`` for handlers that want it.
    """

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        kwargs['extra'] = {**self.extra, **kwargs.get('extra', {})}
        return f"[{self.extra['connection']}:{self.extra['operation']}] {msg}", kwargs


def step_logger(base: logging.Logger, connection: Optional[str], operation: Optional[str]) -> StepLogAdapter:
    """Wrap ``base`` so its messages carry ``[connection:operation]``."""
    return StepLogAdapter(base, {'connection': connection or '-', 'operation': operation or '-'})


class ErrorCountHandler(logging.Handler):
    """
    Count ERROR and CRITICAL records.

    When given an ``error_log_path`` the error log file is opened on the first
    error and attached to the root logger, so clean runs leave no empty file.
    """

    def __init__(self, error_log_path: Optional[str] = None, formatter: Optional[logging.Formatter] = None):
        super().__init__(level=logging.ERROR)
        self.error_count = 0
        self.error_log_path = error_log_path
        self.formatter = formatter
        self._error_file_handler = None

    def _open_error_log(self) -> None:
        try:
            handler = logging.FileHandler(self.error_log_path, encoding='utf-8')
        except OSError as e:
            # stop retrying on every error record
            self.error_log_path = None
            logger.warning(f"Could not open error log: {e}")
            return
        handler.setLevel(logging.ERROR)
        if self.formatter:
            handler.setFormatter(self.formatter)
        # root's handler loop picks this up for the record being emitted
        logging.getLogger().addHandler(handler)
        self._error_file_handler = handler

    def emit(self, record):
        if record.levelno < logging.ERROR:
            return
        self.error_count += 1
        if self.error_log_path and self._error_file_handler is None:
            self._open_error_log()


def _log_paths(script_name: str, log_dir: Path, filename_format: str, split_errors: bool) -> Tuple[Path, Optional[Path]]:
    stem = f"{script_name}_{datetime.now().strftime(filename_format)}" if filename_format else script_name
    error_file = log_dir / f"{stem}_error.log" if split_errors else None
    return log_dir / f"{stem}.log", error_file


def _reset_root(level: int) -> logging.Logger:
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    root.setLevel(level)
    return root


def setup_logging(
    script_name: Optional[str] = None,
    log_dir: Optional[str] = None,
    level: Optional[str] = None,
    split_errors: Optional[bool] = None,
    console: Optional[bool] = None
) -> Tuple[str, Optional[str]]:
    """
    Send log output for this run to ``{log_dir}/{script_name}_{timestamp}.log``.

    Any handlers already on the root logger are replaced. Arguments left as
    None come from the ``logging`` settings block.

    Args:
        script_name: Base name for log files (defaults to the running script's name)
        log_dir: Directory for log files (``logging.directory``)
        level: DEBUG, INFO, WARNING or ERROR (``logging.level``)
        split_errors: Also write errors to ``..._error.log`` once the first one occurs
        console: Echo log lines to stdout

    Returns:
        Tuple of (log_file_path, error_log_path or None)

    Example
    -------
    ::

        import dbstep

        dbstep.setup_logging('nightly_census_load')
        dbstep.setup_logging('census_debug', log_dir='/var/log/dbstep', level='DEBUG')

    Note:
        Set ``logging.filename_format`` in dbstep.yml to ``'%Y%m%d'`` for one
        log per day or ``''`` for a single rolling log file.
    """
    global _current
    conf = settings.get('logging', {})

    script_name = script_name or Path(sys.argv[0]).stem or 'dbstep'
    level_name = (level or conf.get('level', 'INFO')).upper()
    level_no = getattr(logging, level_name)
    if split_errors is None:
        split_errors = conf.get('split_errors', True)
    if console is None:
        console = conf.get('console', True)

    log_dir_path = Path(log_dir or conf.get('directory', './logs'))
    log_dir_path.mkdir(parents=True, exist_ok=True)
    log_file, error_file = _log_paths(script_name, log_dir_path,
                                      conf.get('filename_format', '%Y%m%d_%H%M%S'), bool(split_errors))

    formatter = logging.Formatter(conf.get('format', '%(asctime)s [%(levelname)s] %(name)s: %(message)s'),
                                  datefmt=conf.get('timestamp_format', '%Y-%m-%d %H:%M:%S'))
    root = _reset_root(level_no)

    counter = ErrorCountHandler(str(error_file) if error_file else None, formatter)
    root.addHandler(counter)

    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    file_handler.setFormatter(formatter)
    root.addHandler(file_handler)

    if console:
        stream = logging.StreamHandler(sys.stdout)
        stream.setLevel(level_no)
        stream.setFormatter(formatter)
        root.addHandler(stream)

    _current = RunLogs(str(log_file), str(error_file) if error_file else None, counter)
    logger.info(f"Logging to {log_file}" + (f" (errors also to {error_file})" if error_file else ''))
    return _current.log_file, _current.error_file


def errors_logged() -> Optional[str]:
    """
    Path of the log holding this run's errors, or None if nothing failed.

    Returns the error log when ``split_errors`` is on, otherwise the main log.
    Also None when :func:`setup_logging` was never called.

    Example
    -------
    ::

        dbstep.setup_logging('census_sync')
        output = asyncio.run(step.run(records, 'update'))
        error_log = dbstep.errors_logged()
        if error_log:
            print(f"Errors detected! See: {error_log}")
    """
    if _current is None:
        logger.warning("errors_logged() called before setup_logging()")
        return None
    if not _current.counter.error_count:
        return None
    return _current.error_file or _current.log_file


def cleanup_old_logs(
    log_dir: Optional[str] = None,
    retention_days: Optional[int] = None,
    pattern: str = "*.log",
    dry_run: bool = False
) -> List[str]:
    """
    Delete log files older than ``retention_days`` (``logging.retention_days``, default 30).

    ``dbstep run`` calls this after setting up logging, limited to its own
    ``dbstep_*.log`` files. A retention of 0 keeps everything.

    Returns:
        Paths deleted (or that would be deleted when ``dry_run``)
    """
    conf = settings.get('logging', {})
    log_dir_path = Path(log_dir or conf.get('directory', './logs'))
    if retention_days is None:
        retention_days = conf.get('retention_days', 30)
    if not retention_days:
        return []
    if not log_dir_path.is_dir():
        logger.warning(f"Log directory does not exist: {log_dir_path}")
        return []

    cutoff = (datetime.now() - timedelta(days=retention_days)).timestamp()
    expired = [path for path in sorted(log_dir_path.glob(pattern))
               if path.is_file() and path.stat().st_mtime < cutoff]

    deleted = []
    for path in expired:
        if dry_run:
            logger.info(f"Would delete: {path}")
        else:
            try:
                path.unlink()
            except OSError as e:
                logger.warning(f"Failed to delete {path}: {e}")
                continue
            logger.debug(f"Deleted old log: {path}")
        deleted.append(str(path))

    if deleted and not dry_run:
        logger.info(f"Removed {len(deleted)} logs older than {retention_days} days from {log_dir_path}")
    return deleted
