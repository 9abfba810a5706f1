# dbstep/cli.py

import argparse
import asyncio
import importlib.util
import json
import sys
from importlib.metadata import distributions, requires

from . import config
from .database import get_all_drivers
from .exceptions import DbStepError
from .logging_utils import cleanup_old_logs, errors_logged, setup_logging
from .step import ParamResolver, SqlStep


def _name_cleanup(name):
    """Cleanup module names for search and display"""
    return name.lower().replace('-', '_')


def _get_optional_deps(extra_name='recommended'):
    """ Get optional dependencies for dbstep """
    try:
        reqs = requires('dbstep') or []
    except Exception:
        reqs = []
    deps = []
    # Parse requirements like: 'pyodbc>=5.0; extra == "recommended"'
    for req in reqs:
        req = req.replace("'", '"')
        if f'extra == "{extra_name}"' in req:
            deps.append(req.split(';')[0].strip())
    return deps


def _is_installed(pkg: str) -> bool:
    pkg = _name_cleanup(pkg)
    return (
        importlib.util.find_spec(pkg) is not None
        or pkg in sys.modules
        or pkg in {_name_cleanup(d.metadata['Name']) for d in distributions()}
    )


def checkup():
    """ Check which optional dependencies are installed."""
    deps = [dep.split('>=')[0].split('==')[0].split('<')[0].strip()
            for dep in _get_optional_deps('recommended')]

    installed = {_name_cleanup(d.metadata['Name']): d.version for d in distributions()}

    print(f"{'Package':<20} {'Status':<8} {'Version'}")
    print("-" * 40)

    for dep in deps:
        clean = _name_cleanup(dep)
        status = "✓" if _is_installed(clean) else "✗"
        version = installed.get(clean, '-')
        print(f"{dep:<20} {status:<8} {version}")

    print("\nDB Drivers           Priority* Status   Version")
    print("-" * 56)
    by_type = {}
    for name, info in get_all_drivers().items():
        by_type.setdefault(info['database_type'], []).append((info['priority'], name, info))

    if importlib.util.find_spec('pyodbc') is not None:
        import pyodbc
        odbc_drivers = pyodbc.drivers()
    else:
        odbc_drivers = []

    for db_type in sorted(by_type):
        print(f"{db_type}")
        for pri, name, info in sorted(by_type[db_type], key=lambda x: x[0]):
            display_name = f"  {name}"
            module_name = info.get('module', name)
            try:
                spec = importlib.util.find_spec(module_name)
            except ModuleNotFoundError:
                spec = None
            status = "✓" if spec else "✗"
            version = installed.get(_name_cleanup(module_name), '--')
            odbc_driver_name = info.get("odbc_driver_name")
            if odbc_driver_name:
                odbc_status = "✓" if odbc_driver_name in odbc_drivers else "✗"
                note = f'({odbc_status} {odbc_driver_name})'
            else:
                note = ''
            print(f"{display_name:<20} {pri:<9} {status:<8} {version} {note}")

    print("\n* Lower priority = preferred")

    print("\nConfig Health")
    print("-" * 40)
    for status, msg in config.diagnose_config():
        print(f"{status} {msg}")


def _load_records(path):
    """Read input records from a JSON file ('-' for stdin)."""
    if path is None:
        return []
    if path == '-':
        data = json.load(sys.stdin)
    else:
        with open(path, encoding='utf-8') as fp:
            data = json.load(fp)
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list) or not all(isinstance(rec, dict) for rec in data):
        raise ValueError("Input must be a JSON object or a list of objects")
    return data


def _step_params(args) -> dict:
    params = {}
    if args.table:
        params['table'] = args.table
    if args.columns:
        params['columns'] = args.columns
    if args.update_key:
        params['updateKey'] = args.update_key
    if args.delete_key:
        params['deleteKey'] = args.delete_key
    if args.query:
        params['query'] = args.query
    return params


def run(args) -> int:
    """Run one SQL operation against a configured connection and print the output as JSON."""
    if args.config:
        config.set_config_file(args.config)
    setup_logging(script_name='dbstep', level=args.log_level)
    cleanup_old_logs(pattern='dbstep_*.log')

    records = _load_records(args.input)
    try:
        conn = config.connect(args.connection)
        step = SqlStep(conn, ParamResolver(_step_params(args)),
                       continue_on_fail=args.continue_on_fail,
                       chunk_size=args.chunk_size)
        output = asyncio.run(step.run(records, args.operation))
    except DbStepError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        error_log = errors_logged()
        if error_log:
            print(f"Errors logged to {error_log}", file=sys.stderr)
    print(json.dumps(output, indent=2, default=str))
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(prog='dbstep', description='dbstep command-line utilities')
    subparsers = parser.add_subparsers(dest='command', required=True)

    # run
    run_parser = subparsers.add_parser('run', help='Run an SQL operation against a configured connection')
    run_parser.add_argument('connection', help='Connection name from the config file')
    run_parser.add_argument('operation', help='executeQuery, insert, update or delete')
    run_parser.add_argument('--table', help='Target table')
    run_parser.add_argument('--columns', help='Comma separated columns (default: all record fields)')
    run_parser.add_argument('--update-key', help='Key column for update (default: id)')
    run_parser.add_argument('--delete-key', help='Key column for delete (default: id)')
    run_parser.add_argument('--query', help='SQL text for executeQuery')
    run_parser.add_argument('--input', '-i', help="JSON file of input records ('-' for stdin)")
    run_parser.add_argument('--continue-on-fail', action='store_true',
                            help='Print an error record instead of failing')
    run_parser.add_argument('--chunk-size', type=int, help='Rows per INSERT / keys per DELETE')
    run_parser.add_argument('--config', help='Config file path')
    run_parser.add_argument('--log-level', help='DEBUG, INFO, WARNING or ERROR')

    # checkup
    subparsers.add_parser('checkup', help='Check for dependencies and configuration issues')

    # generate-key
    subparsers.add_parser('generate-key', help='Generate encryption key')

    # store-key
    key_parser = subparsers.add_parser('store-key',
                                       help='Store encryption key in system keyring (generate if not provided)')
    key_parser.add_argument('key', nargs='?', default=None,
                            help='Encryption key to store. If omitted, a new key is generated and stored.')
    key_parser.add_argument('--force', action='store_true',
                            help='Overwrite existing encryption key in system keyring')

    # encrypt-config
    encrypt_parser = subparsers.add_parser('encrypt-config', help='Encrypt passwords in config file')
    encrypt_parser.add_argument('config_file', help='Config file path')

    # encrypt-password
    pwd_parser = subparsers.add_parser('encrypt-password', help='Encrypt a password')
    pwd_parser.add_argument('password', nargs='?', help='Password to encrypt')

    args = parser.parse_args(argv)

    if args.command == 'run':
        return run(args)
    elif args.command == 'checkup':
        return checkup()
    elif args.command == 'generate-key':
        print(config.generate_encryption_key())
    elif args.command == 'store-key':
        return config.store_key(args.key, force=args.force)
    elif args.command == 'encrypt-config':
        count = config.encrypt_config_file(args.config_file)
        print(f"Encrypted {count} passwords in {args.config_file}")
    elif args.command == 'encrypt-password':
        print(config.encrypt_password(args.password))


if __name__ == '__main__':
    sys.exit(main())
