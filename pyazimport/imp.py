#!/usr/bin/env python3
"""
Catalog Import Tool

Applies an exported schema catalog (numbered object folders of .sql scripts)
to a SQL Server or Azure SQL Database target.

Features:
- Dependency-safe ordering by catalog phase, with one catch-up pass for
  objects that referenced something not created yet
- Dev/Prod environment policies (filegroups, security policies, CLR, ...)
- Filegroup remapping, FILESTREAM and Always Encrypted stripping
- Exclusion by object type, schema or name pattern
- JSON integrity report for every run
"""

import argparse
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from .catalog import Catalog, ObjectType, load_catalog, skip_records
from .config import load_config_file, resolve_settings, EffectiveConfiguration
from .connection import SqlServerConnection
from .errors import ConfigurationError, DatabaseConnectionError, ImportAborted
from .exclusions import ExclusionRules, apply_exclusions
from .policy import EnvironmentPolicy, FileGroupLayout
from .report import build_report, write_report
from .scheduler import ExecutionScheduler, ScheduleResult
from .transforms import FileGroupInventory, TransformationPipeline

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = 'config.yaml'
LOG_FILE = 'azs_import.log'


class CatalogImporter:
    """Runs one import of a catalog into the target database."""

    def __init__(self, settings: EffectiveConfiguration, executor=None):
        """Initialize the importer with resolved settings.

        ``executor`` replaces the database connection; tests pass a fake.
        """
        self.settings = settings
        self.executor = executor
        self._owns_connection = executor is None

        import_dir = settings.get('import.importDirectory')
        if not import_dir:
            raise ConfigurationError('import.importDirectory must be set (or pass --import-dir)')
        self.import_dir = Path(import_dir)
        self.workers = settings.get('import.workers', 4)

        self.policy = EnvironmentPolicy(
            mode=settings['import.importMode'],
            enable_clr=settings['import.clr.enableClr'],
            filegroup_strategy=settings.get('import.fileGroupStrategy'),
            strip_filestream=settings['import.stripFilestream'],
            strip_always_encrypted=settings['import.stripAlwaysEncrypted'],
            size_overrides=settings.get('import.fileGroupSizes', {}),
        )
        self.catalog: Optional[Catalog] = None
        self.inventory = FileGroupInventory()
        self.layout: Optional[FileGroupLayout] = None

    def exclusion_rules(self) -> ExclusionRules:
        object_types = list(self.settings.get('import.excludeObjectTypes', []))
        if not self.settings['import.includeData']:
            object_types.append(ObjectType.DATA.value)
        return ExclusionRules.from_values(
            object_types=object_types,
            schemas=self.settings.get('import.excludeSchemas', []),
            object_patterns=self.settings.get('import.excludeObjects', []),
        )

    def load(self) -> Catalog:
        """Load the catalog, then apply exclusions and the environment policy."""
        self.catalog = load_catalog(self.import_dir, self.workers)
        apply_exclusions(self.catalog.units, self.exclusion_rules())
        self.inventory = FileGroupInventory.discover(self.catalog.units)
        self.policy.apply(self.catalog.units, self.inventory)
        return self.catalog

    def transform(self, default_data_path: Optional[str] = None):
        """Rewrite scheduled units for the target environment."""
        self.layout = self.policy.filegroup_layout(
            default_directory=default_data_path,
            path_mapping=self.settings.get('import.fileGroupPathMapping', {}),
            inventory=self.inventory,
            default_size=self.settings['import.defaultFileGroupSize'],
            default_growth=self.settings['import.defaultFileGroupGrowth'],
        )
        pipeline = TransformationPipeline(self.policy.pipeline_options(), self.inventory, self.layout)
        pipeline.apply(self.catalog.units, self.workers)

    def connect(self):
        if not self._owns_connection:
            return
        connection_config = self.settings.connection_config()
        if not connection_config.get('server') or not connection_config.get('database'):
            raise ConfigurationError('connection.server and connection.database must be set')
        self.executor = SqlServerConnection(
            connection_config,
            client=self.settings['connection.client'],
            command_timeout=self.settings.get('import.commandTimeout', 0),
        )
        self.executor.connect()

    def disconnect(self):
        if self._owns_connection and self.executor is not None:
            self.executor.disconnect()

    def make_scheduler(self, database_name: Optional[str]) -> ExecutionScheduler:
        return ExecutionScheduler(
            self.executor,
            continue_on_error=self.settings['import.continueOnError'],
            enable_clr=self.settings['import.clr.enableClr'],
            disable_strict_security=self.settings['import.clr.disableStrictSecurityForImport'],
            restore_strict_security=self.settings['import.clr.restoreStrictSecuritySetting'],
            filegroup_strategy=self.policy.filegroup_strategy,
            layout=self.layout,
            database_name=database_name,
        )

    def run_import(self) -> Dict:
        """Run the complete import process and return the report."""
        started_at = datetime.now()
        logger.info(f"Starting {self.policy.mode} import of {self.import_dir} "
                    f"(filegroup strategy: {self.policy.filegroup_strategy})")
        self.load()

        self.connect()
        result = ScheduleResult()
        try:
            database_name = self.executor.database_name()
            data_path = self.executor.default_data_path()
            self.transform(data_path)

            scheduler = self.make_scheduler(database_name)
            try:
                result = scheduler.run(self.catalog.units)
            except ImportAborted as e:
                result = scheduler.result
                logger.error(f"Import aborted: {e}")
        finally:
            self.disconnect()

        report = self.build_report(result, started_at, datetime.now())
        write_report(report, self.settings.get('import.reportDirectory', '.'))

        logger.info(f"Import summary: {report['importedObjectCount']} imported, "
                    f"{report['skippedObjectCount']} skipped, {report['failedObjectCount']} failed")
        return report

    def build_report(self, result: ScheduleResult, started_at: datetime, finished_at: datetime) -> Dict:
        return build_report(
            units=self.catalog.units,
            skips=skip_records(self.catalog.units),
            failures=result.failures,
            exported_object_count=self.catalog.exported_object_count,
            exported_objects=self.catalog.exported_objects,
            effective_configuration=self.settings.to_report(),
            started_at=started_at,
            finished_at=finished_at,
            aborted=result.aborted,
            extra={
                'importMode': self.policy.mode,
                'fileGroupStrategy': self.policy.filegroup_strategy,
                'catalogDirectory': str(self.import_dir),
                'ensuredFileGroups': result.ensured_filegroups,
                'retriedObjects': [u.path for u in result.retried],
            },
        )

    def show_plan(self) -> List[str]:
        """Print the execution plan without connecting."""
        self.load()
        self.transform()

        lines = []
        print("\n=== Import Plan ===")
        print(f"Mode: {self.policy.mode}, filegroup strategy: {self.policy.filegroup_strategy}")
        current_phase = None
        for unit in self.catalog.units:
            if unit.phase != current_phase:
                current_phase = unit.phase
                print(f"\n--- Phase {unit.phase:02d} ---")
            if unit.is_skipped:
                line = f"  SKIP  {unit.path} ({unit.skip_reason})"
            else:
                line = f"  RUN   {unit.path} [{unit.object_type}]"
            lines.append(line)
            print(line)
        scheduled = sum(1 for u in self.catalog.units if not u.is_skipped)
        print(f"\n{scheduled} scripts scheduled, {len(self.catalog.units) - scheduled} skipped")
        return lines


def configure_logging(verbose: bool = False, log_file: str = LOG_FILE):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(sys.stdout)
        ]
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Import an exported schema catalog into SQL Server / Azure SQL')
    parser.add_argument('--config', help=f'Configuration file path (YAML or JSON, default: {DEFAULT_CONFIG_FILE})')
    parser.add_argument('--import-dir', help='Catalog directory (overrides import.importDirectory)')
    parser.add_argument('--server', help='Target server')
    parser.add_argument('--database', help='Target database')
    parser.add_argument('--username', help='SQL authentication user')
    parser.add_argument('--password', help='SQL authentication password')
    parser.add_argument('--client', choices=['pyodbc', 'pytds'], help='Client library')
    parser.add_argument('--mode', choices=['Dev', 'Prod'], help='Import mode (default: Dev)')
    parser.add_argument('--continue-on-error', dest='continue_on_error', action='store_true', default=None,
                        help='Record failures and keep going')
    parser.add_argument('--stop-on-error', dest='continue_on_error', action='store_false',
                        help='Abort on the first non-recoverable failure')
    parser.add_argument('--exclude-object-types', help='Comma separated object types to skip (replaces config)')
    parser.add_argument('--exclude-schemas', help='Comma separated schemas to skip (replaces config)')
    parser.add_argument('--exclude-objects', help='Comma separated schema.name glob patterns (replaces config)')
    parser.add_argument('--filegroup-strategy', choices=['autoRemap', 'removeToPrimary'])
    parser.add_argument('--strip-filestream', action='store_true', default=None)
    parser.add_argument('--strip-always-encrypted', action='store_true', default=None)
    parser.add_argument('--enable-clr', action='store_true', default=None)
    parser.add_argument('--disable-strict-security', action='store_true', default=None,
                        help="Relax 'clr strict security' while the import runs")
    parser.add_argument('--keep-strict-security-relaxed', dest='restore_strict_security',
                        action='store_false', default=None,
                        help="Do not restore 'clr strict security' afterwards")
    parser.add_argument('--schema-only', action='store_true', help='Skip the Data phase')
    parser.add_argument('--report-dir', help='Directory for the import report')
    parser.add_argument('--command-timeout', type=int, help='Per-batch timeout in seconds')
    parser.add_argument('--workers', type=int, help='Threads used to load and rewrite scripts')
    parser.add_argument('--plan', action='store_true', help='Show the import plan and exit without connecting')
    parser.add_argument('--verbose', action='store_true', help='Debug logging')
    return parser


def cli_settings(args: argparse.Namespace) -> Dict:
    """Map parsed flags onto setting keys. None means the flag was not given."""
    return {
        'connection.server': args.server,
        'connection.database': args.database,
        'connection.username': args.username,
        'connection.password': args.password,
        'connection.client': args.client,
        'import.importDirectory': args.import_dir,
        'import.importMode': args.mode,
        'import.continueOnError': args.continue_on_error,
        'import.excludeObjectTypes': args.exclude_object_types,
        'import.excludeSchemas': args.exclude_schemas,
        'import.excludeObjects': args.exclude_objects,
        'import.includeData': False if args.schema_only else None,
        'import.fileGroupStrategy': args.filegroup_strategy,
        'import.stripFilestream': args.strip_filestream,
        'import.stripAlwaysEncrypted': args.strip_always_encrypted,
        'import.clr.enableClr': args.enable_clr,
        'import.clr.disableStrictSecurityForImport': args.disable_strict_security,
        'import.clr.restoreStrictSecuritySetting': args.restore_strict_security,
        'import.reportDirectory': args.report_dir,
        'import.commandTimeout': args.command_timeout,
        'import.workers': args.workers,
    }


def main(argv=None) -> int:
    """Main function."""
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    try:
        config = load_config_file(args.config or DEFAULT_CONFIG_FILE, required=args.config is not None)
        settings = resolve_settings(config, cli_settings(args))
        importer = CatalogImporter(settings)

        if args.plan:
            importer.show_plan()
            return 0

        report = importer.run_import()
        if report['aborted'] or report['failedObjectCount']:
            return 1
        return 0

    except (ConfigurationError, DatabaseConnectionError) as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        logger.info("Import cancelled by user")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
