"""
Configuration loading and precedence.

Every setting resolves, highest first, from:

1. a command-line flag
2. the environment variable named by a sibling ``<key>EnvVar`` entry
   (``connection: {passwordEnvVar: SQL_PASSWORD}``)
3. the ``connection`` / ``import`` sections of the YAML or JSON config file
4. the built-in default

and remembers where its value came from for the import report.
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT = 'default'
CONFIG_FILE = 'configFile'
ENV_VAR = 'envVar'
CLI = 'cli'

_SECRET_NAME = re.compile(r'password|secret|token|connectionstring|credential', re.IGNORECASE)
_TRUE = {'true', 'yes', 'y', '1', 'on'}
_FALSE = {'false', 'no', 'n', '0', 'off'}


@dataclass(frozen=True)
class Setting:
    key: str                 # dotted path, first part is the config section
    kind: str = 'str'        # str | bool | int | list | dict
    default: Any = None
    choices: tuple = ()
    secret: bool = False

    @property
    def is_secret(self) -> bool:
        return self.secret or bool(_SECRET_NAME.search(self.key))


SETTINGS: List[Setting] = [
    Setting('connection.server'),
    Setting('connection.database'),
    Setting('connection.username'),
    Setting('connection.password', secret=True),
    Setting('connection.client', default='pyodbc', choices=('pyodbc', 'pytds')),
    Setting('connection.driver', default='ODBC Driver 18 for SQL Server'),
    Setting('connection.port', 'int', default=1433),
    Setting('connection.authenticationType', default='sql', choices=('sql', 'azure_ad')),
    Setting('connection.trustServerCertificate', 'bool', default=True),
    Setting('import.importDirectory'),
    Setting('import.importMode', default='Dev', choices=('Dev', 'Prod')),
    Setting('import.continueOnError', 'bool', default=False),
    Setting('import.excludeObjectTypes', 'list', default=[]),
    Setting('import.excludeSchemas', 'list', default=[]),
    Setting('import.excludeObjects', 'list', default=[]),
    Setting('import.includeData', 'bool', default=True),
    Setting('import.fileGroupStrategy', choices=('autoRemap', 'removeToPrimary')),
    Setting('import.stripFilestream', 'bool', default=False),
    Setting('import.stripAlwaysEncrypted', 'bool', default=False),
    Setting('import.clr.enableClr', 'bool', default=False),
    Setting('import.clr.disableStrictSecurityForImport', 'bool', default=False),
    Setting('import.clr.restoreStrictSecuritySetting', 'bool', default=True),
    Setting('import.commandTimeout', 'int', default=300),
    Setting('import.fileGroupPathMapping', 'dict', default={}),
    Setting('import.fileGroupSizes', 'dict', default={}),
    Setting('import.defaultFileGroupSize', default='64MB'),
    Setting('import.defaultFileGroupGrowth', default='64MB'),
    Setting('import.reportDirectory', default='.'),
    Setting('import.workers', 'int', default=4),
]

SETTINGS_BY_KEY = {s.key: s for s in SETTINGS}


def load_config_file(config_file: Optional[str], required: bool = False) -> Dict:
    """Load configuration from YAML or JSON file."""
    if not config_file:
        return {}
    if not os.path.exists(config_file):
        if required:
            raise ConfigurationError(f"Configuration file {config_file} not found!")
        logger.info(f"No configuration file at {config_file}, using defaults and flags")
        return {}
    try:
        with open(config_file, 'r', encoding='utf-8') as f:
            if config_file.endswith(('.yaml', '.yml')):
                loaded = yaml.safe_load(f)
            else:
                loaded = json.load(f)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Invalid configuration file format: {e}") from e
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Configuration file {config_file} must contain a mapping")
    return loaded


def _coerce(setting: Setting, value: Any) -> Any:
    if value is None:
        return None
    try:
        if setting.kind == 'bool':
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE:
                return True
            if text in _FALSE:
                return False
            raise ValueError(f"not a boolean: {value!r}")
        if setting.kind == 'int':
            if isinstance(value, bool):
                raise ValueError(f"not an integer: {value!r}")
            return int(value)
        if setting.kind == 'list':
            if isinstance(value, str):
                return [item.strip() for item in value.split(',') if item.strip()]
            if isinstance(value, (list, tuple, set)):
                return [str(item).strip() for item in value if str(item).strip()]
            raise ValueError(f"not a list: {value!r}")
        if setting.kind == 'dict':
            if not isinstance(value, dict):
                raise ValueError(f"not a mapping: {value!r}")
            return dict(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid value for {setting.key}: {e}") from e

    value = str(value)
    if setting.choices:
        for choice in setting.choices:
            if choice.lower() == value.lower():
                return choice
        raise ConfigurationError(
            f"Invalid value for {setting.key}: {value!r} (expected one of {', '.join(setting.choices)})")
    return value


def _section_lookup(config: Mapping, key: str):
    """Return (container, leaf) for a dotted key, or (None, leaf) when absent."""
    parts = key.split('.')
    node = config
    for part in parts[:-1]:
        node = node.get(part) if isinstance(node, Mapping) else None
        if node is None:
            break
    if not isinstance(node, Mapping):
        node = None
    container = node
    # Flat configs of the export tools keep connection keys at top level
    if parts[0] == 'connection' and (container is None or parts[-1] not in container):
        if parts[-1] in config or f"{parts[-1]}EnvVar" in config:
            container = config
    return container, parts[-1]


@dataclass
class ResolvedSetting:
    value: Any
    source: str


class EffectiveConfiguration:
    """Resolved settings with their origin."""

    def __init__(self, resolved: Dict[str, ResolvedSetting]):
        self._resolved = resolved

    def __getitem__(self, key: str) -> Any:
        return self._resolved[key].value

    def get(self, key: str, default: Any = None) -> Any:
        resolved = self._resolved.get(key)
        return resolved.value if resolved is not None and resolved.value is not None else default

    def source(self, key: str) -> str:
        return self._resolved[key].source

    def connection_config(self) -> Dict:
        prefix = 'connection.'
        return {k[len(prefix):]: v.value for k, v in self._resolved.items() if k.startswith(prefix)}

    def to_report(self) -> Dict[str, Dict]:
        """Settings for serialization, without credentials or secrets."""
        report = {}
        for key, resolved in self._resolved.items():
            setting = SETTINGS_BY_KEY.get(key)
            if setting is not None and setting.is_secret:
                continue
            report[key] = {'value': resolved.value, 'source': resolved.source}
        return report


def resolve_settings(config: Optional[Dict], cli_values: Optional[Dict[str, Any]] = None,
                     environ: Optional[Mapping[str, str]] = None) -> EffectiveConfiguration:
    """Resolve every known setting. ``cli_values`` maps setting keys to flag values (None = not given)."""
    config = config or {}
    cli_values = cli_values or {}
    environ = os.environ if environ is None else environ

    resolved: Dict[str, ResolvedSetting] = {}
    for setting in SETTINGS:
        cli_value = cli_values.get(setting.key)
        if cli_value is not None:
            resolved[setting.key] = ResolvedSetting(_coerce(setting, cli_value), CLI)
            continue

        container, leaf = _section_lookup(config, setting.key)
        if container is not None:
            env_name = container.get(f"{leaf}EnvVar")
            if env_name:
                if env_name in environ:
                    resolved[setting.key] = ResolvedSetting(_coerce(setting, environ[env_name]), ENV_VAR)
                    continue
                logger.warning(f"{setting.key}: environment variable {env_name} is not set")
            if container.get(leaf) is not None:
                resolved[setting.key] = ResolvedSetting(_coerce(setting, container[leaf]), CONFIG_FILE)
                continue

        default = setting.default
        if isinstance(default, (list, dict)):
            default = type(default)(default)
        resolved[setting.key] = ResolvedSetting(default, DEFAULT)

    return EffectiveConfiguration(resolved)
