"""
Target database connection.

One connection per import run, in autocommit mode: catalog scripts contain
ALTER DATABASE statements that cannot run inside a user transaction. Two
client libraries are supported, pyodbc (default) and python-tds.
"""

import logging
import re
from typing import Any, Dict, Optional

import certifi

from .errors import BatchExecutionError, DatabaseConnectionError

logger = logging.getLogger(__name__)

PYODBC = 'pyodbc'
PYTDS = 'pytds'
CLIENTS = (PYODBC, PYTDS)

DEFAULT_DRIVER = 'ODBC Driver 18 for SQL Server'

# "... Invalid object name 'dbo.X'. (208) (SQLExecDirectW)"
_ODBC_ERROR_NUMBER = re.compile(r'\((\d+)\)\s*(?:\(SQL\w+\))?\s*$')
_ODBC_TIMEOUT_STATES = ('HYT00', 'HYT01')


def build_odbc_connection_string(config: Dict) -> str:
    server = config['server']
    database = config['database']
    port = config.get('port') or 1433
    if port != 1433 and ',' not in str(server):
        server = f"{server},{port}"
    trust = 'yes' if config.get('trustServerCertificate', True) else 'no'
    driver = config.get('driver') or DEFAULT_DRIVER

    if config.get('authenticationType', 'sql') == 'azure_ad':
        return (
            f"DRIVER={{{driver}}};"
            f"SERVER={server};"
            f"DATABASE={database};"
            f"Authentication=ActiveDirectoryDefault;"
            f"TrustServerCertificate={trust};"
        )
    username = config.get('username')
    password = config.get('password')
    if not username:
        # Windows integrated authentication
        return (
            f"DRIVER={{{driver}}};"
            f"SERVER={server};"
            f"DATABASE={database};"
            f"Trusted_Connection=yes;"
            f"TrustServerCertificate={trust};"
        )
    return (
        f"DRIVER={{{driver}}};"
        f"SERVER={server};"
        f"DATABASE={database};"
        f"UID={username};"
        f"PWD={password};"
        f"TrustServerCertificate={trust};"
    )


def build_tds_params(config: Dict, timeout: Optional[int] = None) -> Dict:
    username = config.get('username')
    password = config.get('password')
    if not username or not password:
        raise DatabaseConnectionError('Missing username/password for SQL authentication in config')
    params = {
        'server': config['server'],
        'database': config['database'],
        'user': str(username),
        'password': str(password),
        'port': int(config.get('port') or 1433),
        'cafile': certifi.where(),
        'validate_host': False,
        'autocommit': True,
    }
    if timeout:
        params['timeout'] = timeout
    return params


def to_batch_error(exc: Exception) -> BatchExecutionError:
    """Normalize a pyodbc or python-tds exception."""
    if isinstance(exc, BatchExecutionError):
        return exc

    number = getattr(exc, 'msg_no', None) or getattr(exc, 'number', None)
    message = getattr(exc, 'text', None) or str(exc)
    timeout = isinstance(exc, TimeoutError) or type(exc).__name__ == 'TimeoutError'

    args = getattr(exc, 'args', ())
    if len(args) >= 2 and isinstance(args[0], str) and isinstance(args[1], str):
        # pyodbc: (sqlstate, message)
        message = args[1]
        timeout = timeout or args[0] in _ODBC_TIMEOUT_STATES
        if number is None:
            match = _ODBC_ERROR_NUMBER.search(message)
            if match:
                number = int(match.group(1))
    if 'timeout expired' in message.lower():
        timeout = True
    return BatchExecutionError(message, number=number if isinstance(number, int) else None,
                               timeout=timeout)


class SqlServerConnection:
    """Executes batches against the target database."""

    def __init__(self, config: Dict, client: str = PYODBC, command_timeout: int = 0):
        if client not in CLIENTS:
            raise ValueError(f"Unknown client library: {client}")
        self.config = config
        self.client = client
        self.command_timeout = command_timeout
        self.connection = None

    def connect(self):
        """Open the connection, raising DatabaseConnectionError on failure."""
        try:
            if self.client == PYTDS:
                import pytds
                self.connection = pytds.connect(**build_tds_params(self.config, self.command_timeout))
            else:
                import pyodbc
                self.connection = pyodbc.connect(build_odbc_connection_string(self.config), autocommit=True)
                if self.command_timeout:
                    self.connection.timeout = self.command_timeout
        except DatabaseConnectionError:
            raise
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            raise DatabaseConnectionError(f"Failed to connect to {self.config.get('server')}: {e}") from e
        logger.info(f"Successfully connected to {self.config.get('server')}/{self.config.get('database')} "
                    f"via {self.client}")

    def disconnect(self):
        """Close database connection."""
        if self.connection:
            self.connection.close()
            self.connection = None
            logger.info("Database connection closed")

    def execute(self, batch: str):
        """Run one batch, draining every result set so late errors surface."""
        cursor = self.connection.cursor()
        try:
            cursor.execute(batch)
            while cursor.nextset():
                pass
        except Exception as e:
            raise to_batch_error(e) from e
        finally:
            cursor.close()

    def scalar(self, query: str) -> Any:
        cursor = self.connection.cursor()
        try:
            cursor.execute(query)
            row = cursor.fetchone()
            return row[0] if row else None
        except Exception as e:
            raise to_batch_error(e) from e
        finally:
            cursor.close()

    def database_name(self) -> str:
        return self.scalar("SELECT DB_NAME()")

    def default_data_path(self) -> Optional[str]:
        return self.scalar("SELECT CAST(SERVERPROPERTY('InstanceDefaultDataPath') AS nvarchar(4000))")
