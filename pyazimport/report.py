"""Import integrity report."""

import json
import logging
from collections import Counter
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional

from .catalog import ScriptUnit, SkipRecord, UnitStatus
from .scheduler import FailureRecord

logger = logging.getLogger(__name__)

REPORT_NAME_FORMAT = 'import-report-{:%Y%m%d_%H%M%S}.json'


def _unit_entry(unit: ScriptUnit) -> Dict:
    entry = unit.describe()
    entry['attempts'] = unit.attempt_count
    return entry


def build_report(units: List[ScriptUnit], skips: List[SkipRecord], failures: List[FailureRecord],
                 exported_object_count: int, exported_objects: List[Dict],
                 effective_configuration: Dict[str, Dict],
                 started_at: datetime, finished_at: datetime, aborted: bool = False,
                 extra: Optional[Dict] = None) -> Dict:
    """Aggregate final unit states into the report structure."""
    imported = [u for u in units if u.status == UnitStatus.APPLIED]

    skipped_objects = []
    for record in skips:
        entry = record.unit.describe()
        entry['reason'] = str(record.reason)
        skipped_objects.append(entry)
    reasons = Counter(str(record.reason) for record in skips)

    failed_objects = []
    for failure in failures:
        entry = _unit_entry(failure.unit)
        entry['status'] = str(failure.unit.status)
        entry['classification'] = failure.classification
        entry['error'] = failure.error_message
        if failure.error_number is not None:
            entry['errorNumber'] = failure.error_number
        if failure.hint:
            entry['hint'] = failure.hint
        failed_objects.append(entry)

    duration: timedelta = finished_at - started_at
    report = {
        'startedAt': started_at.isoformat(),
        'finishedAt': finished_at.isoformat(),
        'duration': str(duration),
        'durationSeconds': round(duration.total_seconds(), 3),
        'aborted': aborted,
        'exportedObjectCount': exported_object_count,
        'importedObjectCount': len(imported),
        'skippedObjectCount': len(skips),
        'failedObjectCount': len(failed_objects),
        'skippedReasons': dict(reasons),
        'effectiveConfiguration': effective_configuration,
        'exportedObjects': exported_objects,
        'importedObjects': [_unit_entry(u) for u in imported],
        'skippedObjects': skipped_objects,
        'failedObjects': failed_objects,
    }
    if extra:
        report.update(extra)
    return report


def write_report(report: Dict, directory='.', now: Optional[datetime] = None) -> Optional[Path]:
    """Write the report as JSON. Failures are logged, never raised."""
    now = now or datetime.now()
    try:
        target_dir = Path(directory)
        target_dir.mkdir(parents=True, exist_ok=True)
        report_path = target_dir / REPORT_NAME_FORMAT.format(now)
        with open(report_path, 'w', encoding='utf-8') as f:
            json.dump(report, f, indent=2, default=str)
    except (OSError, TypeError, ValueError) as e:
        logger.error(f"Could not write import report to {directory}: {e}")
        return None
    logger.info(f"Import report written to {report_path}")
    return report_path
