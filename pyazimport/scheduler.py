"""
Execution scheduler.

Units run one at a time over a single connection, phase by phase in
ascending order and in file order within a phase. A failure that looks like
"referenced object not created yet" is deferred to one catch-up pass after
the last phase; anything else is fatal (stop-on-error) or permanent
(continue-on-error).

Not safe for two concurrent imports against the same server: the CLR strict
security setting is server-wide.
"""

import logging
import re
from contextlib import contextmanager
from dataclasses import dataclass, field
from itertools import groupby
from typing import Dict, List, Optional

from .catalog import ObjectType, ScriptUnit, UnitStatus, split_batches
from .errors import BatchExecutionError, ImportAborted
from .transforms import AUTO_REMAP, find_filegroup_references

logger = logging.getLogger(__name__)

# Main pass plus one catch-up pass
MAX_ATTEMPTS = 2

DEFERRED = 'Deferred'
FATAL = 'Fatal'
TIMEOUT = 'Timeout'
ERROR = 'Error'

# SQL Server errors raised when a referenced object does not exist yet
DEFERRABLE_ERROR_NUMBERS = {
    208,    # Invalid object name
    1088,   # Cannot find the object because it does not exist
    1767,   # Foreign key references invalid table
    1921,   # Invalid partition scheme / filegroup
    2715,   # Cannot find data type
    2760,   # Schema does not exist
    2812,   # Could not find stored procedure
    4121,   # Cannot find column or user-defined function
    4902,   # Cannot find the object
    7641,   # Full-text catalog does not exist
    15151,  # Cannot find the object/user because it does not exist
}
DEFERRABLE_MESSAGES = re.compile(
    r"invalid object name|cannot find|could not find|does not exist", re.IGNORECASE)

CLR_SETTINGS_HINT = {
    'message': 'CLR assemblies require CLR integration on the target server. '
               'Set both settings to import them.',
    'settings': ['clr.enableClr', 'clr.disableStrictSecurityForImport'],
}


def classify_error(error: BatchExecutionError) -> str:
    """Deferred, Timeout or Error."""
    if error.timeout:
        return TIMEOUT
    if error.number in DEFERRABLE_ERROR_NUMBERS:
        return DEFERRED
    if error.number is None and DEFERRABLE_MESSAGES.search(error.message or ''):
        return DEFERRED
    return ERROR


@dataclass
class FailureRecord:
    unit: ScriptUnit
    error_message: str
    classification: str            # Deferred | Fatal
    error_number: Optional[int] = None
    hint: Optional[Dict] = None


@dataclass
class ScheduleResult:
    applied: List[ScriptUnit] = field(default_factory=list)
    failures: List[FailureRecord] = field(default_factory=list)
    retried: List[ScriptUnit] = field(default_factory=list)
    ensured_filegroups: List[str] = field(default_factory=list)
    aborted: bool = False


def _sp_configure(executor, option: str, value: int):
    executor.execute(f"EXEC sp_configure N'{option}', {int(value)};\nRECONFIGURE;")


def read_configuration(executor, option: str) -> Optional[int]:
    value = executor.scalar(
        f"SELECT CAST(value_in_use AS int) FROM sys.configurations WHERE name = N'{option}'")
    return int(value) if value is not None else None


@contextmanager
def clr_strict_security_scope(executor, relax_strict_security: bool, restore: bool = True):
    """Enable CLR integration and relax 'clr strict security' for the block.

    The original strict-security value is put back on every exit path,
    cancellation included, unless ``restore`` is false.
    """
    _sp_configure(executor, 'show advanced options', 1)
    _sp_configure(executor, 'clr enabled', 1)
    logger.info("CLR integration enabled")

    original = None
    if relax_strict_security:
        original = read_configuration(executor, 'clr strict security')
        if original:
            _sp_configure(executor, 'clr strict security', 0)
            logger.warning("'clr strict security' relaxed for the duration of the import")
        else:
            original = None
    try:
        yield original
    finally:
        if original is not None:
            if restore:
                try:
                    _sp_configure(executor, 'clr strict security', original)
                except Exception as e:
                    logger.error(f"Failed to restore 'clr strict security' to {original}: {e}")
                    raise
                logger.info(f"'clr strict security' restored to {original}")
            else:
                logger.warning("'clr strict security' left relaxed (restoreStrictSecuritySetting is false)")


class ExecutionScheduler:
    """Bounded-retry state machine applying units in phase order."""

    def __init__(self, executor, continue_on_error: bool = False, enable_clr: bool = False,
                 disable_strict_security: bool = False, restore_strict_security: bool = True,
                 filegroup_strategy: str = AUTO_REMAP, layout=None, database_name: str = None):
        self.executor = executor
        self.continue_on_error = continue_on_error
        self.enable_clr = enable_clr
        self.disable_strict_security = disable_strict_security
        self.restore_strict_security = restore_strict_security
        self.filegroup_strategy = filegroup_strategy
        self.layout = layout
        self.database_name = database_name
        self.result = ScheduleResult()
        self._resume_at: Dict[str, int] = {}
        self._last_error: Dict[str, BatchExecutionError] = {}
        self._ensured = set()

    # -- scoped server settings -------------------------------------------

    @contextmanager
    def _server_scope(self, units: List[ScriptUnit]):
        needs_clr = self.enable_clr and any(
            u.object_type == ObjectType.ASSEMBLY and not u.is_skipped for u in units)
        if not needs_clr:
            yield
            return
        with clr_strict_security_scope(self.executor, self.disable_strict_security,
                                       self.restore_strict_security):
            yield

    # -- execution -----------------------------------------------------------

    def _attempt(self, unit: ScriptUnit) -> Optional[BatchExecutionError]:
        unit.attempt_count += 1
        batches = split_batches(unit.raw_content)
        start = self._resume_at.get(unit.path, 0)
        for index in range(start, len(batches)):
            batch, repeat = batches[index]
            try:
                for _ in range(repeat):
                    self.executor.execute(batch)
            except BatchExecutionError as e:
                self._resume_at[unit.path] = index
                self._last_error[unit.path] = e
                return e
        self._resume_at.pop(unit.path, None)
        return None

    def _ensure_filegroups(self, unit: ScriptUnit):
        if self.filegroup_strategy != AUTO_REMAP or self.layout is None or unit.object_type == ObjectType.FILE_GROUP:
            return
        for name in find_filegroup_references(unit.raw_content):
            key = name.upper()
            if key in self._ensured:
                continue
            self._ensured.add(key)
            try:
                statement = self.layout.create_statement(name, self.database_name or 'db')
                self.executor.execute(statement)
                self.result.ensured_filegroups.append(name)
                logger.info(f"Ensured filegroup [{name}] exists before {unit.path}")
            except (BatchExecutionError, ValueError) as e:
                logger.warning(f"Could not ensure filegroup [{name}] for {unit.path}: {e}")

    def _applied(self, unit: ScriptUnit):
        unit.status = UnitStatus.APPLIED
        self.result.applied.append(unit)
        logger.info(f"Applied {unit.object_type} {unit.qualified_name} ({unit.path})")

    def _fail(self, unit: ScriptUnit, error: BatchExecutionError, classification: str, fatal: bool):
        hint = None
        if unit.object_type == ObjectType.ASSEMBLY and not self.enable_clr:
            hint = CLR_SETTINGS_HINT
            logger.warning(f"{unit.path}: {hint['message']} ({', '.join(hint['settings'])})")
        unit.status = UnitStatus.FAILED_FATAL if fatal else UnitStatus.FAILED_PERMANENT
        self.result.failures.append(FailureRecord(
            unit=unit,
            error_message=error.message,
            classification=classification,
            error_number=error.number,
            hint=hint,
        ))
        logger.error(f"Failed {unit.object_type} {unit.qualified_name} ({unit.path}): {error.message}")

    def _is_deferrable(self, unit: ScriptUnit, error: BatchExecutionError) -> bool:
        if unit.object_type == ObjectType.ASSEMBLY and not self.enable_clr:
            return False
        return classify_error(error) == DEFERRED and unit.attempt_count < MAX_ATTEMPTS

    def _main_pass(self, units: List[ScriptUnit]) -> List[ScriptUnit]:
        deferred = []
        ordered = sorted(units, key=lambda u: u.phase)
        for phase, group in groupby(ordered, key=lambda u: u.phase):
            group = [u for u in group if not u.is_skipped]
            if not group:
                continue
            logger.info(f"Phase {phase:02d}: {len(group)} scripts")
            for unit in group:
                self._ensure_filegroups(unit)
                error = self._attempt(unit)
                if error is None:
                    self._applied(unit)
                elif self._is_deferrable(unit, error):
                    unit.status = UnitStatus.FAILED_DEFERRED
                    deferred.append(unit)
                    logger.warning(f"Deferred {unit.path}: {error.message}")
                else:
                    fatal = not self.continue_on_error
                    self._fail(unit, error, FATAL, fatal)
                    if fatal:
                        raise ImportAborted(f"Import stopped at {unit.path}: {error.message}", unit)
        return deferred

    def _catch_up_pass(self, deferred: List[ScriptUnit]):
        if not deferred:
            return
        logger.info(f"Catch-up pass: retrying {len(deferred)} deferred scripts")
        for unit in deferred:
            self.result.retried.append(unit)
            error = self._attempt(unit)
            if error is None:
                self._applied(unit)
            else:
                self._fail(unit, error, DEFERRED, fatal=False)

    def run(self, units: List[ScriptUnit]) -> ScheduleResult:
        """Apply every non-skipped unit. Raises ImportAborted in stop-on-error mode."""
        self.result = ScheduleResult()
        try:
            with self._server_scope(units):
                deferred = self._main_pass(units)
                self._catch_up_pass(deferred)
        except ImportAborted:
            self.result.aborted = True
            # deferred units that never got their catch-up attempt
            for unit in units:
                if unit.status == UnitStatus.FAILED_DEFERRED:
                    error = self._last_error[unit.path]
                    self.result.failures.append(FailureRecord(
                        unit=unit, error_message=error.message, classification=DEFERRED,
                        error_number=error.number))
            raise

        catch_up_failures = [f for f in self.result.failures if f.classification == DEFERRED]
        if catch_up_failures and not self.continue_on_error:
            self.result.aborted = True
            first = catch_up_failures[0]
            raise ImportAborted(f"{len(catch_up_failures)} scripts still failing after the catch-up pass, "
                                f"first: {first.unit.path}: {first.error_message}", first.unit)
        return self.result
