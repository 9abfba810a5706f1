# dbstep/config.py
"""
Configuration management for database connections and step settings.
Supports YAML configuration files with optional password encryption and global settings.
"""

import logging
import os
from pathlib import Path
from textwrap import dedent
from typing import Any, Dict, List, Optional, Tuple

from .connection import AsyncConnection
from .database import get_params_for_database, register_user_drivers
from .defaults import settings
from .exceptions import ConfigurationError
from .utils import reset_format_cache

try:
    import yaml
except ImportError:
    raise ImportError("PyYAML is required. Install with: pip install PyYAML")

try:
    from cryptography.fernet import Fernet
    HAS_CRYPTO = True
except ImportError:
    HAS_CRYPTO = False

try:
    import keyring
    HAS_KEYRING = True
except ImportError:
    HAS_KEYRING = False

logger = logging.getLogger(__name__)

ENCRYPTION_KEY_VAR = 'DBSTEP_ENCRYPTION_KEY'
KEYRING_SERVICE = 'dbstep'


def diagnose_config(config_file: Optional[str] = None) -> List[Tuple[str, str]]:
    """Config health check: file, optional dependencies, keys and passwords."""
    results = []

    try:
        mgr = ConfigManager(config_file)
        results.append(('✓', f"Config loaded: {mgr.config_file}"))
    except (FileNotFoundError, ValueError) as e:
        results.append(('✗', f"Config failed: {e}"))
        return results

    results.append(('✓', "cryptography ready") if HAS_CRYPTO else ('✗', "cryptography missing"))
    results.append(('✓', "keyring ready") if HAS_KEYRING else ('?', "keyring optional"))

    env_key = os.getenv(ENCRYPTION_KEY_VAR)
    if env_key:
        results.append(('✓', f"{ENCRYPTION_KEY_VAR} set"))
        results.append(('✓', "Env key valid") if _valid_fernet(env_key) else ('✗', "Env key invalid"))
    else:
        results.append(('?', "No env key"))

    enc_count = sum(
        1 for c in mgr.config.get('connections', {}).values() if 'encrypted_password' in c
    ) + sum(
        1 for p in mgr.config.get('passwords', {}).values() if 'encrypted_password' in p
    )
    results.append(('✓', f"{enc_count} encrypted passwords") if enc_count else ('✓', "No encrypted passwords"))

    uenc_count = sum(
        1 for c in mgr.config.get('connections', {}).values()
        if 'password' in c and not str(c.get('password', '')).startswith('${')
    ) + sum(
        1 for p in mgr.config.get('passwords', {}).values()
        if 'password' in p and not str(p.get('password', '')).startswith('${')
    )
    results.append(("✗", f"{uenc_count} unencrypted passwords!") if uenc_count else ('✓', "No unencrypted passwords"))
    return results


def _valid_fernet(key: str) -> bool:
    if not HAS_CRYPTO:
        return False
    try:
        Fernet(key.encode())
        return True
    except (ValueError, TypeError):
        return False


def _substitute_env(value: Any) -> Any:
    """Replace a ``${VAR}`` string with the environment variable's value."""
    if isinstance(value, str) and value.startswith('${') and value.endswith('}'):
        env_var = value[2:-1]
        env_value = os.environ.get(env_var)
        if env_value is None:
            raise ValueError(f"Environment variable {env_var} not set")
        return env_value
    return value


class ConfigManager:
    """
    Manage dbstep configuration from YAML files.

    Configuration File Structure
    ----------------------------
    ::

        # dbstep.yml
        settings:
          chunk_size: 1000
          strict_columns: false
          pool_size: 4
          logging:
            level: INFO

        connections:
          ba_sing_se:
            type: sqlserver
            host: db01.earthkingdom.local
            database: census
            user: dai_li
            encrypted_password: gAAAAABh...

        passwords:
          api_key:
            password: ${API_KEY}

    Configuration Locations
    -----------------------
    1. File specified in config_file parameter
    2. ``./dbstep.yml`` / ``./dbstep.yaml``
    3. ``~/.config/dbstep.yml`` / ``~/.config/dbstep.yaml``

    Notes
    -----
    * Connections require a 'type' (sqlserver, sqlite) or 'driver' field
    * Encrypted passwords need DBSTEP_ENCRYPTION_KEY or a key in the system keyring
    * Passwords may reference environment variables with ${VAR_NAME}
    """

    def __init__(self, config_file: Optional[str] = None):
        """
        Initialize config manager and load configuration.

        Raises
        ------
        FileNotFoundError
            If no config file found in any search location
        ValueError
            If config file is invalid or malformed
        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()
        self._fernet = None

        self._apply_settings()

    @staticmethod
    def _find_config_file(config_file: Optional[str]) -> Path:
        """Find the configuration file."""
        if config_file:
            path = Path(config_file)
            if not path.exists():
                raise FileNotFoundError(f"Config file not found: {config_file}")
            return path

        candidates = [
            Path("dbstep.yml"),
            Path("dbstep.yaml"),
            Path.home() / ".config" / "dbstep.yml",
            Path.home() / ".config" / "dbstep.yaml"
        ]

        for candidate in candidates:
            if candidate.exists():
                return candidate

        raise FileNotFoundError(
            "No config file found. Looked in: " +
            ", ".join(str(c) for c in candidates)
        )

    def _load_config(self) -> Dict[str, Any]:
        """Load and validate configuration file."""
        try:
            with open(self.config_file, 'r') as f:
                config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ValueError(f"Failed to load config file {self.config_file}: {e}")

        if not isinstance(config, dict):
            raise ValueError(f"Invalid config file {self.config_file}.")

        for name, conn in (config.get('connections') or {}).items():
            if not isinstance(conn, dict) or ('type' not in conn and 'driver' not in conn):
                raise ValueError(
                    f"Invalid connection '{name}' in {self.config_file}: 'type' or 'driver' is required")

        if 'passwords' in config:
            if not isinstance(config['passwords'], dict):
                raise ValueError(f"Invalid config file {self.config_file}: 'passwords' must be a dictionary")
            for name, password_data in config['passwords'].items():
                if not isinstance(password_data, dict):
                    raise ValueError(f"Invalid password entry '{name}' in {self.config_file}: must be a dictionary")
                if 'password' not in password_data and 'encrypted_password' not in password_data:
                    raise ValueError(
                        f"Invalid password entry '{name}' in {self.config_file}: "
                        f"'password' or 'encrypted_password' is required")

        if 'settings' in config and not isinstance(config['settings'], dict):
            raise ValueError(f"Invalid config file {self.config_file}: 'settings' must be a dictionary")

        logger.info(f"Loaded config from {self.config_file}")
        return config

    def _apply_settings(self) -> None:
        """Merge config settings into the global defaults."""
        config_settings = dict(self.config.get('settings') or {})

        drivers = config_settings.pop('drivers', None)
        if drivers:
            register_user_drivers(drivers)

        # merge nested logging block rather than replace it
        logging_settings = config_settings.pop('logging', None)
        if isinstance(logging_settings, dict):
            settings['logging'] = {**settings.get('logging', {}), **logging_settings}

        settings.update(config_settings)
        reset_format_cache()

    def get_setting(self, key: str, default: Any = None) -> Any:
        """
        Get a setting value from the config.

        Args:
            key: Setting key (supports dot notation like 'logging.level')
            default: Default value if key not found

        Example:
            chunk_size = config.get_setting('chunk_size', 1000)
        """
        value = self.config.get('settings') or {}
        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def _get_encryption_key(self) -> bytes:
        """Get encryption key from environment variable or keyring."""
        key_str = os.environ.get(ENCRYPTION_KEY_VAR)
        if key_str:
            logger.debug(f"Using {ENCRYPTION_KEY_VAR} from environment")
            return key_str.encode()

        if HAS_KEYRING:
            try:
                key_str = keyring.get_password(KEYRING_SERVICE, 'encryption_key')
            except Exception as e:
                logger.warning(f"Keyring access failed: {e}")
                key_str = None
            if key_str:
                logger.debug("Using encryption key from keyring")
                return key_str.encode()

        if not HAS_CRYPTO:
            raise ValueError("Encryption not available. Install cryptography package to enable encryption.")
        if HAS_KEYRING:
            msg = dedent("""\
            Encryption key not found in environment or keyring.
            Run: `dbstep store-key` to generate and store a new encryption key in the keyring.""")
        else:
            msg = dedent(f"""\
            Encryption key not found in environment or keyring.
            Run `dbstep generate-key` to generate a new encryption key
            then set it in the {ENCRYPTION_KEY_VAR} environment variable.""")
        raise ValueError(msg)

    def _get_fernet(self) -> 'Fernet':
        """Get or create Fernet instance for encryption/decryption."""
        if not HAS_CRYPTO:
            raise ValueError("Encryption not available. Install cryptography package to enable encryption.")
        if self._fernet is None:
            self._fernet = Fernet(self._get_encryption_key())
        return self._fernet

    def decrypt_password(self, encrypted_password: str) -> str:
        """Decrypt an encrypted password."""
        try:
            return self._get_fernet().decrypt(encrypted_password.encode()).decode()
        except ValueError:
            raise
        except Exception as e:
            raise ValueError(f"Failed to decrypt password: {e}")

    def encrypt_password(self, password: str) -> str:
        """Encrypt a password for storage."""
        return self._get_fernet().encrypt(password.encode()).decode()

    def get_connection_config(self, name: str) -> Dict[str, Any]:
        """Get configuration for a named connection with its password resolved."""
        connections = self.config.get('connections') or {}

        if name not in connections:
            available = list(connections.keys())
            raise ConfigurationError(
                f"Connection '{name}' not found in config. "
                f"Available connections: {available}"
            )

        config = connections[name].copy()

        if 'encrypted_password' in config:
            config['password'] = self.decrypt_password(config.pop('encrypted_password'))

        if 'password' in config:
            config['password'] = _substitute_env(config['password'])

        return config

    def list_connections(self) -> list:
        """List all available connection names."""
        return list((self.config.get('connections') or {}).keys())

    def get_password(self, name: str) -> str:
        """
        Get a stored password by name.

        Raises:
            ValueError: If password not found or decryption fails
        """
        passwords = self.config.get('passwords') or {}

        if name not in passwords:
            available = list(passwords.keys())
            raise ValueError(
                f"Password '{name}' not found in config. "
                f"Available passwords: {available}"
            )

        password_entry = passwords[name]
        if 'encrypted_password' in password_entry:
            return self.decrypt_password(password_entry['encrypted_password'])
        return _substitute_env(password_entry['password'])

    def list_passwords(self) -> list:
        """List all available password names."""
        return list((self.config.get('passwords') or {}).keys())


# Global config manager instance
_config_manager: Optional[ConfigManager] = None


def _get_manager(config_file: Optional[str] = None) -> ConfigManager:
    global _config_manager
    if config_file:
        return ConfigManager(config_file)
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def set_config_file(config_file: str) -> None:
    """Set the configuration file to use globally."""
    global _config_manager
    _config_manager = ConfigManager(config_file)


def connect(name: str, password: str = None, config_file: Optional[str] = None,
            pool_size: Optional[int] = None) -> AsyncConnection:
    """
    Build an (unopened) async connection for a named database from configuration.

    The step opens and closes it; use ``async with`` when using it directly.

    Args:
        name: Connection name from config file
        password: Optional password if not stored in config
        config_file: Optional path to config file
        pool_size: Driver connections to open (defaults to the connection's
            ``pool_size`` entry, then the ``pool_size`` setting)

    Example:
        conn = connect('ba_sing_se')
        output = await SqlStep(conn, {'query': 'SELECT 1 AS one'}).run([], 'executeQuery')
    """
    config = _get_manager(config_file).get_connection_config(name)
    if password:
        config['password'] = password
    info = {key: val for key, val in config.items() if key != 'password'}
    logger.debug(f"Connection {name} config: {info}")

    db_type = config.pop('type', None) or settings.get('default_db_type', 'sqlserver')
    driver = config.pop('driver', None)
    config_pool_size = config.pop('pool_size', None)
    pool_size = pool_size or config_pool_size

    allowed_params = get_params_for_database(db_type, driver)
    unknown = set(config) - allowed_params
    if unknown:
        logger.warning(f"Unknown connection settings for {name} (ignored): {sorted(unknown)}")
    config = {key: val for key, val in config.items() if key in allowed_params}

    return AsyncConnection.create(db_type, driver=driver, pool_size=pool_size, name=name, **config)


def get_password(name: str, config_file: Optional[str] = None) -> str:
    """Get a stored password from configuration."""
    return _get_manager(config_file).get_password(name)


def get_setting(key: str, default: Any = None, config_file: Optional[str] = None) -> Any:
    """
    Get a setting value from configuration.

    Args:
        key: Setting key (supports dot notation like 'logging.level')
        default: Default value if key not found
        config_file: Optional path to config file
    """
    return _get_manager(config_file).get_setting(key, default)


def store_key(key: Optional[str] = None, force: bool = False) -> None:
    """CLI utility to store encryption key in system keyring."""
    if not HAS_CRYPTO:
        raise ValueError("Encryption not available. Install cryptography package to enable encryption.")
    if not HAS_KEYRING:
        raise ValueError("Keyring not available. Install keyring package to store key in system keyring.")

    try:
        current_key = keyring.get_password(KEYRING_SERVICE, "encryption_key")
    except Exception:
        current_key = None

    if current_key:
        if force:
            msg = "Encryption key already stored in system keyring. Overwriting!"
            logger.warning(msg)
            print(msg)
        else:
            msg = "Encryption key already stored in system keyring. Use --force to overwrite."
            logger.warning(msg)
            print(msg)
            return

    if key is None:
        key = Fernet.generate_key().decode()
    elif not _valid_fernet(key):
        raise ValueError("Invalid encryption key. Must be 32 url-safe base64-encoded bytes.")

    try:
        keyring.set_password(KEYRING_SERVICE, "encryption_key", key)
    except Exception as e:
        msg = f"Failed to store encryption key in system keyring: {e}"
        logger.error(msg)
        raise ValueError(msg)
    msg = "Stored encryption key in system keyring"
    logger.info(msg)
    print(msg)


def generate_encryption_key() -> str:
    """
    Generate a random Fernet encryption key.

    Store it in the DBSTEP_ENCRYPTION_KEY environment variable or in the
    keyring with `dbstep store-key [your key]`.
    """
    if not HAS_CRYPTO:
        raise ValueError("Encryption not available. Install cryptography package to enable encryption.")
    return Fernet.generate_key().decode()


def encrypt_password(password: str = None, encryption_key: str = None) -> str:
    """
    Encrypt a password.

    Args:
        password: Password to encrypt (if None, prompts for input)
        encryption_key: Optional encryption key. If None, uses DBSTEP_ENCRYPTION_KEY or the keyring

    Returns:
        str: Encrypted password
    """
    if password is None:
        import getpass
        password = getpass.getpass("Enter password to encrypt: ")

    if encryption_key:
        if not HAS_CRYPTO:
            raise ValueError("Encryption not available. Install cryptography package to enable encryption.")
        return Fernet(encryption_key.encode()).encrypt(password.encode()).decode()

    temp_config = ConfigManager.__new__(ConfigManager)
    temp_config._fernet = None
    return temp_config.encrypt_password(password)


def encrypt_config_file(filename: str) -> int:
    """Encrypt all plain-text passwords in a config file. Returns the number encrypted."""
    temp_config = ConfigManager.__new__(ConfigManager)
    temp_config._fernet = None
    with open(filename) as fp:
        config = yaml.safe_load(fp) or {}

    changes = 0
    sections = list((config.get('connections') or {}).values()) + list((config.get('passwords') or {}).values())
    for entry in sections:
        password = entry.get('password')
        # leave ${VAR} references alone
        if password and not str(password).startswith('${') and 'encrypted_password' not in entry:
            entry['encrypted_password'] = temp_config.encrypt_password(str(entry.pop('password')))
            changes += 1

    if changes:
        with open(filename, 'w') as fp:
            yaml.safe_dump(config, fp, default_flow_style=False, sort_keys=False)
        logger.info(f"Encrypted {changes} passwords in {filename}")
    return changes
