"""
Configuration loader with environment variable expansion and universal _FILE support

Resolution order (highest to lowest priority):
1. CLI arguments
2. Environment variable _FILE variant (reads from file)
3. Environment variable (direct value)
4. Config file
5. Default value
"""

import os
import re
import sys
import shutil
import yaml
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Any, List, Optional

from qbt_reconciler.errors import ConfigurationError
from qbt_reconciler.utils import parse_duration


# Maps config keys to environment variable names
ENV_VAR_MAP = {
    # qBittorrent configuration
    'qbittorrent.host': 'QBT_RECONCILER_QBITTORRENT_HOST',
    'qbittorrent.username': 'QBT_RECONCILER_QBITTORRENT_USERNAME',
    'qbittorrent.password': 'QBT_RECONCILER_QBITTORRENT_PASSWORD',
    'qbittorrent.local_filesystem_access': 'QBT_RECONCILER_LOCAL_FILESYSTEM_ACCESS',

    # Engine configuration
    'engine.dry_run': 'QBT_RECONCILER_DRY_RUN',
    'engine.scan_interval': 'QBT_RECONCILER_SCAN_INTERVAL',
    'engine.skip_within': 'QBT_RECONCILER_SKIP_WITHIN',
    'engine.max_batch_hashes': 'QBT_RECONCILER_MAX_BATCH_HASHES',
    'engine.run_timeout': 'QBT_RECONCILER_RUN_TIMEOUT',
    'engine.free_space_cooldown': 'QBT_RECONCILER_FREE_SPACE_COOLDOWN',
    'engine.activity_retention_days': 'QBT_RECONCILER_ACTIVITY_RETENTION_DAYS',

    # Activity store configuration
    'activity.backend': 'QBT_RECONCILER_ACTIVITY_BACKEND',
    'activity.sqlite_path': 'QBT_RECONCILER_ACTIVITY_SQLITE_PATH',
    'activity.redis_url': 'QBT_RECONCILER_ACTIVITY_REDIS_URL',

    # Notifications and external programs
    'notifications.webhook_url': 'QBT_RECONCILER_WEBHOOK_URL',
    'programs.max_workers': 'QBT_RECONCILER_PROGRAM_WORKERS',

    # Rules & logging
    'rules.file': 'QBT_RECONCILER_RULES_FILE',
    'config.dir': 'QBT_RECONCILER_CONFIG_DIR',
    'logging.level': 'QBT_RECONCILER_LOG_LEVEL',
    'logging.file': 'QBT_RECONCILER_LOG_FILE',
    'logging.trace_mode': 'QBT_RECONCILER_LOG_TRACE_MODE',
}

# Default config location (Linux FHS standard)
DEFAULT_CONFIG_SHARE_PATH = Path('/usr/share/qbt-reconciler')


@dataclass
class EngineSettings:
    """Reconciliation engine tunables"""
    scan_interval: int = 20
    skip_within: int = 120
    max_batch_hashes: int = 50
    run_timeout: int = 25
    free_space_cooldown: int = 300
    activity_retention_days: int = 7
    dry_run: bool = False


@dataclass
class InstanceConfig:
    """Connection settings for one qBittorrent instance (a collection)"""
    name: str
    host: str
    username: str = 'admin'
    password: str = ''
    enabled: bool = True
    local_filesystem_access: bool = False
    extra: Dict[str, Any] = field(default_factory=dict)


def copy_default_if_missing(target_path: Path, default_filename: str) -> bool:
    """
    Copy default config from /usr/share if target doesn't exist.

    Args:
        target_path: Target file path (e.g., /config/config.yml)
        default_filename: Default filename (e.g., 'config.default.yml')

    Returns:
        True if file was copied, False otherwise
    """
    if target_path.exists():
        return False

    default_path = DEFAULT_CONFIG_SHARE_PATH / default_filename
    if not default_path.exists():
        return False

    try:
        target_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(default_path, target_path)
        print(f"INFO: Created {target_path} from {default_path}", file=sys.stderr)
        return True
    except OSError as e:
        print(f"WARNING: Failed to copy default config: {e}", file=sys.stderr)
        return False


def get_nested_config(config: Dict[str, Any], key: str) -> Optional[Any]:
    """
    Get nested configuration value using dot notation

    Args:
        config: Configuration dictionary
        key: Dot-notation key (e.g., 'engine.skip_within')

    Returns:
        Configuration value or None if not found
    """
    value = config

    for k in key.split('.'):
        if isinstance(value, dict) and k in value:
            value = value[k]
        else:
            return None

    return value


def parse_bool(value: Any) -> bool:
    """
    Parse boolean from various formats

    Examples:
        >>> parse_bool('true')
        True
        >>> parse_bool('1')
        True
        >>> parse_bool(0)
        False
        >>> parse_bool(None)
        False
    """
    if value is None:
        return False

    if isinstance(value, bool):
        return value

    if isinstance(value, int):
        return value != 0

    if isinstance(value, str):
        return value.lower() in ('true', '1', 'yes', 'on')

    return bool(value)


def parse_int(value: Any, default: int = 0) -> int:
    """
    Parse integer from various formats

    Args:
        value: Value to parse
        default: Default value if parsing fails

    Returns:
        Integer value
    """
    if value is None:
        return default

    if isinstance(value, bool):
        return int(value)

    if isinstance(value, int):
        return value

    try:
        return int(value)
    except (ValueError, TypeError):
        return default


def resolve_config(
    cli_value: Optional[Any],
    env_var: str,
    config: Dict[str, Any],
    config_key: str,
    default: Optional[Any] = None
) -> Any:
    """
    Universal configuration resolver with _FILE support

    Args:
        cli_value: Value from CLI argument (None if not provided)
        env_var: Environment variable name (without _FILE suffix)
        config: Loaded configuration dictionary
        config_key: Dot-notation key for config file (e.g., 'engine.run_timeout')
        default: Default value if no source provides a value

    Returns:
        Resolved configuration value
    """
    # 1. CLI argument takes highest priority
    if cli_value is not None:
        return cli_value

    # 2. _FILE variant, used for docker secrets
    file_var = f"{env_var}_FILE"
    if file_var in os.environ:
        file_path = os.environ[file_var]
        try:
            with open(file_path, 'r') as f:
                content = f.read().strip()
            logging.debug(f"Loaded config from file: {file_var}={file_path}")
            return content
        except FileNotFoundError:
            logging.warning(f"File not found for {file_var}: {file_path}")
        except PermissionError:
            logging.warning(f"Permission denied reading {file_var}: {file_path}")
        except OSError as e:
            logging.warning(f"Error reading {file_var} from {file_path}: {e}")

    # 3. Direct environment variable
    if env_var in os.environ:
        value = os.environ[env_var]
        logging.debug(f"Loaded config from env: {env_var}")
        return value

    # 4. Config file value
    if config:
        value = get_nested_config(config, config_key)
        if value is not None:
            logging.debug(f"Loaded config from file: {config_key}={value}")
            return value

    # 5. Default value
    logging.debug(f"Using default config: {config_key}={default}")
    return default


def expand_env_vars(value: Any) -> Any:
    """
    Recursively expand environment variables in configuration values

    Supports format: ${VAR_NAME:-default_value}

    Examples:
        >>> os.environ['TEST_VAR'] = 'hello'
        >>> expand_env_vars('${TEST_VAR:-default}')
        'hello'
        >>> expand_env_vars('${MISSING_VAR:-default}')
        'default'
    """
    if isinstance(value, str):
        pattern = r'\$\{([^}:]+)(?::-([^}]*))?\}'

        def replacer(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else ''
            return os.environ.get(var_name, default_value)

        return re.sub(pattern, replacer, value)

    elif isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}

    elif isinstance(value, list):
        return [expand_env_vars(item) for item in value]

    return value


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file with error handling

    Args:
        file_path: Path to YAML file

    Returns:
        Parsed YAML as dictionary

    Raises:
        ConfigurationError: If file cannot be loaded
    """
    if not file_path.exists():
        raise ConfigurationError(str(file_path), "File does not exist")

    try:
        with open(file_path, 'r') as f:
            content = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(str(file_path), f"Invalid YAML syntax: {str(e)}")
    except PermissionError:
        raise ConfigurationError(str(file_path), "Permission denied - cannot read file")
    except OSError as e:
        raise ConfigurationError(str(file_path), f"Cannot read file: {str(e)}")

    if content is None:
        raise ConfigurationError(str(file_path), "File is empty")

    if not isinstance(content, dict):
        raise ConfigurationError(str(file_path), "Top level must be a mapping")

    return content


class Config:
    """Configuration manager"""

    def __init__(self, config_dir: Optional[Path] = None):
        """
        Initialize configuration

        Args:
            config_dir: Directory containing config.yml and rules.yml
                       Defaults to CONFIG_DIR or /config
        """
        if config_dir is None:
            config_dir = Path(os.environ.get('CONFIG_DIR', '/config'))

        self.config_dir = Path(config_dir)
        self.config_file = self.config_dir / 'config.yml'

        copy_default_if_missing(self.config_file, 'config.default.yml')
        self._load_config()

        rules_file = resolve_config(None, ENV_VAR_MAP['rules.file'], self.config, 'rules.file', 'rules.yml')
        self.rules_file = Path(rules_file)
        if not self.rules_file.is_absolute():
            self.rules_file = self.config_dir / self.rules_file

        copy_default_if_missing(self.rules_file, 'rules.default.yml')
        self._load_rules()

    def _load_config(self):
        """Load config.yml with environment variable expansion"""
        logging.debug(f"Loading config from {self.config_file}")
        self.config = expand_env_vars(load_yaml_file(self.config_file))
        logging.debug("Configuration loaded successfully")

    def _load_rules(self):
        """Load rules.yml (structure is validated by the rule store)"""
        logging.debug(f"Loading rules from {self.rules_file}")

        raw_rules = load_yaml_file(self.rules_file)
        self.rules = raw_rules.get('rules', [])

        if not isinstance(self.rules, list):
            raise ConfigurationError(str(self.rules_file), "'rules' must be a list")

        for i, rule in enumerate(self.rules):
            if not isinstance(rule, dict):
                raise ConfigurationError(str(self.rules_file), f"Rule #{i+1} must be a dictionary")
            if 'name' not in rule:
                raise ConfigurationError(str(self.rules_file), f"Rule #{i+1} missing required field: 'name'")

        logging.debug(f"Loaded {len(self.rules)} rules")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-notation key

        Args:
            key: Configuration key (e.g., 'qbittorrent.host')
            default: Default value if key not found

        Returns:
            Configuration value
        """
        value = get_nested_config(self.config, key)
        return default if value is None else value

    def _resolve(self, key: str, default: Any = None, cli_value: Any = None) -> Any:
        return resolve_config(cli_value, ENV_VAR_MAP[key], self.config, key, default)

    def get_qbittorrent_config(self) -> Dict[str, str]:
        """Get qBittorrent connection configuration for the single-instance layout"""
        return {
            'host': self._resolve('qbittorrent.host', 'http://localhost:8080'),
            'user': self._resolve('qbittorrent.username', 'admin'),
            'pass': self._resolve('qbittorrent.password', ''),
        }

    def get_instances(self) -> List[InstanceConfig]:
        """
        Get all configured qBittorrent instances

        Uses the 'instances' list when present, otherwise a single instance
        named 'default' built from the 'qbittorrent' block.
        """
        raw_instances = self.get('instances')
        if not raw_instances:
            qbt = self.get_qbittorrent_config()
            return [InstanceConfig(
                name='default',
                host=qbt['host'],
                username=qbt['user'],
                password=qbt['pass'],
                local_filesystem_access=parse_bool(
                    self._resolve('qbittorrent.local_filesystem_access', False)
                ),
            )]

        if not isinstance(raw_instances, list):
            raise ConfigurationError(str(self.config_file), "'instances' must be a list")

        instances = []
        seen = set()
        for i, raw in enumerate(raw_instances):
            if not isinstance(raw, dict) or not raw.get('name') or not raw.get('host'):
                raise ConfigurationError(
                    str(self.config_file),
                    f"Instance #{i+1} requires 'name' and 'host'"
                )
            name = str(raw['name'])
            if name in seen:
                raise ConfigurationError(str(self.config_file), f"Duplicate instance name: '{name}'")
            seen.add(name)

            known = {'name', 'host', 'username', 'password', 'enabled', 'local_filesystem_access'}
            instances.append(InstanceConfig(
                name=name,
                host=str(raw['host']),
                username=str(raw.get('username', 'admin')),
                password=str(raw.get('password', '')),
                enabled=parse_bool(raw.get('enabled', True)),
                local_filesystem_access=parse_bool(raw.get('local_filesystem_access', False)),
                extra={k: v for k, v in raw.items() if k not in known},
            ))

        return instances

    def get_engine_settings(self) -> EngineSettings:
        """Resolve engine tunables, accepting seconds or duration strings"""
        defaults = EngineSettings()
        return EngineSettings(
            scan_interval=parse_duration(self._resolve('engine.scan_interval'), defaults.scan_interval),
            skip_within=parse_duration(self._resolve('engine.skip_within'), defaults.skip_within),
            max_batch_hashes=parse_int(self._resolve('engine.max_batch_hashes'), defaults.max_batch_hashes),
            run_timeout=parse_duration(self._resolve('engine.run_timeout'), defaults.run_timeout),
            free_space_cooldown=parse_duration(
                self._resolve('engine.free_space_cooldown'), defaults.free_space_cooldown
            ),
            activity_retention_days=parse_int(
                self._resolve('engine.activity_retention_days'), defaults.activity_retention_days
            ),
            dry_run=self.is_dry_run(),
        )

    def get_activity_config(self) -> Dict[str, Any]:
        """Get activity (audit) store configuration"""
        return {
            'backend': self._resolve('activity.backend', 'sqlite'),
            'sqlite_path': self._resolve('activity.sqlite_path', str(self.config_dir / 'qbt-reconciler.db')),
            'redis_url': self._resolve('activity.redis_url', 'redis://localhost:6379/0'),
        }

    def get_notification_config(self) -> Dict[str, Any]:
        """Get webhook notification configuration"""
        return {
            'webhook_url': self._resolve('notifications.webhook_url'),
            'timeout': parse_int(self.get('notifications.timeout', 10), 10),
            'notify_on_no_changes': parse_bool(self.get('notifications.notify_on_no_changes', False)),
        }

    def get_program_config(self) -> Dict[str, Any]:
        """Get external program definitions and pool size"""
        definitions = self.get('programs.definitions', {}) or {}
        if not isinstance(definitions, dict):
            raise ConfigurationError(str(self.config_file), "'programs.definitions' must be a mapping")
        return {
            'max_workers': parse_int(self._resolve('programs.max_workers', 4), 4),
            'definitions': definitions,
        }

    def get_tracker_display_names(self) -> Dict[str, str]:
        """Get domain -> display name map (keys lowercased)"""
        names = self.get('trackers.display_names', {}) or {}
        return {str(domain).lower(): str(name) for domain, name in names.items()}

    def is_dry_run(self) -> bool:
        """Check if dry-run mode is enabled"""
        env_dry_run = os.environ.get('DRY_RUN', '').lower()
        if env_dry_run in ('true', '1', 'yes', 'on'):
            return True
        elif env_dry_run in ('false', '0', 'no', 'off'):
            return False

        return parse_bool(self._resolve('engine.dry_run', False))

    def get_log_level(self) -> str:
        """Get logging level"""
        return os.environ.get('LOG_LEVEL', self._resolve('logging.level', 'INFO')).upper()

    def get_log_file(self) -> Path:
        """
        Get log file path

        Relative paths are resolved against CONFIG_DIR.
        """
        log_file_str = os.environ.get('LOG_FILE', self._resolve('logging.file', 'logs/qbt-reconciler.log'))
        log_path = Path(log_file_str)

        if not log_path.is_absolute():
            log_path = self.config_dir / log_path

        return log_path

    def get_trace_mode(self) -> bool:
        """Check if trace mode is enabled (detailed logging with module/function/line)"""
        env_trace = os.environ.get('TRACE_MODE', '').lower()
        if env_trace in ('true', '1', 'yes', 'on'):
            return True
        elif env_trace in ('false', '0', 'no', 'off'):
            return False

        return parse_bool(self._resolve('logging.trace_mode', False))

    def get_rules(self) -> list:
        """Get raw rule documents"""
        return self.rules


def load_config(config_dir: Optional[Path] = None) -> Config:
    """
    Load configuration from directory

    Args:
        config_dir: Directory containing config.yml and rules.yml

    Returns:
        Config object
    """
    return Config(config_dir)
