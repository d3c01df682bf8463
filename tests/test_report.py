import json
import os
import tempfile
import unittest
from datetime import datetime, timedelta

from pyazimport.catalog import ObjectType, ScriptUnit, SkipRecord, SkipReason, UnitStatus
from pyazimport.config import resolve_settings
from pyazimport.report import build_report, write_report
from pyazimport.scheduler import CLR_SETTINGS_HINT, FATAL, FailureRecord

STARTED = datetime(2024, 3, 5, 14, 7, 9)


def make_unit(name, status=UnitStatus.PENDING, object_type=ObjectType.TABLE):
    unit = ScriptUnit(path=f"09_Tables_PrimaryKey/dbo.{name}.sql", phase=9, sub_phase=0,
                      object_type=object_type, schema='dbo', name=name, raw_content="SELECT 1")
    unit.status = status
    return unit


def skipped(name, reason):
    unit = make_unit(name)
    unit.skip(reason)
    return SkipRecord(unit, reason)


class BuildReportTestCase(unittest.TestCase):
    def _build(self, units=(), skips=(), failures=(), config=None, **kwargs):
        return build_report(list(units), list(skips), list(failures), kwargs.pop('exported', len(units)),
                            [], config or {}, STARTED, STARTED + timedelta(seconds=42.5), **kwargs)

    def test_skip_histogram(self):
        skips = [
            skipped('A1', SkipReason.DEV_MODE_FILE_GROUP),
            skipped('A2', SkipReason.DEV_MODE_FILE_GROUP),
            skipped('A3', SkipReason.DEV_MODE_FILE_GROUP),
            skipped('B', SkipReason.EXCLUDED_BY_TYPE),
            skipped('C', SkipReason.EMPTY_SCRIPT),
        ]
        report = self._build(skips=skips)
        self.assertEqual(report['skippedReasons'],
                         {'DevMode_FileGroup': 3, 'ExcludedByType': 1, 'EmptyScript': 1})
        self.assertEqual(report['skippedObjectCount'], 5)
        self.assertEqual(report['skippedObjects'][3]['reason'], 'ExcludedByType')

    def test_counts_and_failures(self):
        applied = make_unit('Customers', UnitStatus.APPLIED)
        applied.attempt_count = 2
        failed = make_unit('Utils', UnitStatus.FAILED_PERMANENT, ObjectType.ASSEMBLY)
        failure = FailureRecord(failed, "CREATE ASSEMBLY failed", FATAL, error_number=6218,
                                hint=CLR_SETTINGS_HINT)
        report = self._build(units=[applied, failed], failures=[failure], exported=10)
        self.assertEqual(report['exportedObjectCount'], 10)
        self.assertEqual(report['importedObjectCount'], 1)
        self.assertEqual(report['failedObjectCount'], 1)
        self.assertEqual(report['importedObjects'][0]['attempts'], 2)
        entry = report['failedObjects'][0]
        self.assertEqual(entry['type'], 'Assembly')
        self.assertEqual(entry['status'], 'Failed-Permanent')
        self.assertEqual(entry['errorNumber'], 6218)
        self.assertEqual(entry['hint']['settings'], ['clr.enableClr', 'clr.disableStrictSecurityForImport'])
        self.assertEqual(report['durationSeconds'], 42.5)
        self.assertFalse(report['aborted'])

    def test_effective_configuration_has_no_secrets(self):
        settings = resolve_settings({'connection': {'server': 'sql01', 'password': 'hunter2'}}, {}, environ={})
        report = self._build(config=settings.to_report())
        text = json.dumps(report, default=str)
        self.assertNotIn('hunter2', text)
        self.assertIn('connection.server', report['effectiveConfiguration'])

    def test_extra_keys(self):
        report = self._build(aborted=True, extra={'importMode': 'Dev'})
        self.assertTrue(report['aborted'])
        self.assertEqual(report['importMode'], 'Dev')


class WriteReportTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()

    def tearDown(self):
        self.tmp.cleanup()

    def test_file_name_carries_timestamp(self):
        path = write_report({'aborted': False}, self.tmp.name, now=STARTED)
        self.assertEqual(path.name, 'import-report-20240305_140709.json')
        with open(path, encoding='utf-8') as f:
            self.assertEqual(json.load(f), {'aborted': False})

    def test_creates_missing_directory(self):
        target = os.path.join(self.tmp.name, 'reports', 'nested')
        self.assertIsNotNone(write_report({}, target, now=STARTED))
        self.assertTrue(os.path.isdir(target))

    def test_write_failure_is_logged_not_raised(self):
        blocker = os.path.join(self.tmp.name, 'not-a-dir')
        with open(blocker, 'w') as f:
            f.write('x')
        with self.assertLogs('pyazimport.report', level='ERROR'):
            self.assertIsNone(write_report({}, blocker, now=STARTED))


if __name__ == '__main__':
    unittest.main()
