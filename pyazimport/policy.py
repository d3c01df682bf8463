"""Environment policy: what each import mode skips, and how filegroups are laid out."""

import logging
from typing import Dict, List, Optional

from .catalog import ObjectType, ScriptUnit, SkipReason, split_batches
from .transforms import (AUTO_REMAP, REMOVE_TO_PRIMARY, FileGroupInventory, PipelineOptions,
                         batch_filegroup)

logger = logging.getLogger(__name__)

DEV = 'Dev'
PROD = 'Prod'
IMPORT_MODES = (DEV, PROD)

DEFAULT_FILEGROUP_SIZE = '64MB'
DEFAULT_FILEGROUP_GROWTH = '64MB'

# Dev mode never runs these; the environment-specific pieces stay behind
DEV_MODE_SKIPS = {
    ObjectType.FILE_GROUP: SkipReason.DEV_MODE_FILE_GROUP,
    ObjectType.DATABASE_CONFIGURATION: SkipReason.DEV_MODE_DATABASE_CONFIGURATION,
    ObjectType.SECURITY_POLICY: SkipReason.DEV_MODE_SECURITY_POLICY,
    ObjectType.EXTERNAL_DATA: SkipReason.DEV_MODE_EXTERNAL_DATA,
    ObjectType.ASSEMBLY: SkipReason.DEV_MODE_CLR_ASSEMBLY,
}


class FileGroupLayout:
    """Where filegroup files go and how big they start.

    ``default_directory`` is normally the target server's default data path.
    Size overrides only apply in Prod mode.
    """

    def __init__(self, default_directory: Optional[str] = None,
                 path_mapping: Optional[Dict[str, str]] = None,
                 size_overrides: Optional[Dict[str, Dict]] = None,
                 default_size: str = DEFAULT_FILEGROUP_SIZE,
                 default_growth: str = DEFAULT_FILEGROUP_GROWTH,
                 inventory: Optional[FileGroupInventory] = None):
        self.default_directory = default_directory
        self.path_mapping = {k.upper(): v for k, v in (path_mapping or {}).items()}
        self.size_overrides = {k.upper(): v or {} for k, v in (size_overrides or {}).items()}
        self.default_size = default_size
        self.default_growth = default_growth
        self.inventory = inventory or FileGroupInventory()

    def directory_for(self, filegroup: str) -> Optional[str]:
        return self.path_mapping.get(filegroup.upper(), self.default_directory)

    def file_path_for(self, filegroup: str, logical_name: str) -> Optional[str]:
        directory = self.directory_for(filegroup)
        if not directory:
            return None
        separator = '\\' if '\\' in directory else '/'
        # FILESTREAM and memory-optimized containers are folders
        if self.inventory.is_filestream(filegroup) or self.inventory.is_memory_optimized(filegroup):
            file_name = logical_name
        else:
            file_name = f"{logical_name}.ndf"
        return directory.rstrip('\\/') + separator + file_name

    def size_for(self, filegroup: str) -> str:
        return str(self.size_overrides.get(filegroup.upper(), {}).get('size') or self.default_size)

    def growth_for(self, filegroup: str) -> str:
        return str(self.size_overrides.get(filegroup.upper(), {}).get('growth') or self.default_growth)

    def create_statement(self, filegroup: str, database_name: str) -> str:
        """Idempotent batch creating a filegroup and one file in it."""
        logical_name = f"{database_name}_{filegroup}"
        name_literal = filegroup.replace("'", "''")
        bracketed = filegroup.replace(']', ']]')
        if self.inventory.is_memory_optimized(filegroup):
            contains = ' CONTAINS MEMORY_OPTIMIZED_DATA'
        elif self.inventory.is_filestream(filegroup):
            contains = ' CONTAINS FILESTREAM'
        else:
            contains = ''
        file_path = self.file_path_for(filegroup, logical_name)
        if file_path is None:
            raise ValueError(f"No data path known for filegroup {filegroup}")

        quoted_path = file_path.replace("'", "''")
        file_spec = f"NAME = N'{logical_name}', FILENAME = N'{quoted_path}'"
        if not contains:
            file_spec += f", SIZE = {self.size_for(filegroup)}, FILEGROWTH = {self.growth_for(filegroup)}"
        return (
            f"IF NOT EXISTS (SELECT 1 FROM sys.filegroups WHERE name = N'{name_literal}')\n"
            f"BEGIN\n"
            f"    ALTER DATABASE CURRENT ADD FILEGROUP [{bracketed}]{contains};\n"
            f"    ALTER DATABASE CURRENT ADD FILE ({file_spec}) TO FILEGROUP [{bracketed}];\n"
            f"END"
        )


class EnvironmentPolicy:
    """Dev or Prod behaviour for one import run."""

    def __init__(self, mode: str = DEV, enable_clr: bool = False,
                 filegroup_strategy: Optional[str] = None,
                 strip_filestream: bool = False, strip_always_encrypted: bool = False,
                 size_overrides: Optional[Dict[str, Dict]] = None):
        if mode not in IMPORT_MODES:
            raise ValueError(f"Unknown import mode: {mode}")
        self.mode = mode
        self.enable_clr = enable_clr
        self.filegroup_strategy = filegroup_strategy or (REMOVE_TO_PRIMARY if mode == DEV else AUTO_REMAP)
        self.strip_filestream = strip_filestream
        self.strip_always_encrypted = strip_always_encrypted
        self.size_overrides = size_overrides or {}

    @property
    def is_dev(self) -> bool:
        return self.mode == DEV

    def gate(self, unit: ScriptUnit, inventory: FileGroupInventory) -> Optional[SkipReason]:
        """Skip reason for a unit under this policy, or None to schedule it."""
        if not self.is_dev:
            return None
        reason = DEV_MODE_SKIPS.get(unit.object_type)
        if reason is None:
            return None
        if unit.object_type == ObjectType.ASSEMBLY and self.enable_clr:
            return None
        if unit.object_type == ObjectType.FILE_GROUP and self._has_memory_optimized(unit, inventory):
            # memory-optimized filegroups have no PRIMARY fallback
            return None
        return reason

    @staticmethod
    def _has_memory_optimized(unit: ScriptUnit, inventory: FileGroupInventory) -> bool:
        for batch, _ in split_batches(unit.raw_content):
            name = batch_filegroup(batch)
            if name and inventory.is_memory_optimized(name):
                return True
        return False

    def apply(self, units: List[ScriptUnit], inventory: FileGroupInventory) -> int:
        """Mark units this policy skips. Returns how many were skipped."""
        skipped = 0
        for unit in units:
            if unit.is_skipped:
                continue
            reason = self.gate(unit, inventory)
            if reason is not None:
                unit.skip(reason)
                skipped += 1
        if skipped:
            logger.info(f"{self.mode} mode skipped {skipped} environment-specific scripts")
        return skipped

    def pipeline_options(self) -> PipelineOptions:
        return PipelineOptions(
            filegroup_strategy=self.filegroup_strategy,
            strip_filestream=self.strip_filestream,
            strip_always_encrypted=self.strip_always_encrypted,
            memory_optimized_filegroups_only=self.is_dev or self.filegroup_strategy == REMOVE_TO_PRIMARY,
            empty_filegroup_reason=SkipReason.DEV_MODE_FILE_GROUP if self.is_dev else SkipReason.EMPTY_SCRIPT,
        )

    def filegroup_layout(self, default_directory: Optional[str], path_mapping: Optional[Dict[str, str]],
                         inventory: FileGroupInventory, default_size: str = DEFAULT_FILEGROUP_SIZE,
                         default_growth: str = DEFAULT_FILEGROUP_GROWTH) -> FileGroupLayout:
        return FileGroupLayout(
            default_directory=default_directory,
            path_mapping=path_mapping,
            size_overrides=self.size_overrides if not self.is_dev else None,
            default_size=default_size,
            default_growth=default_growth,
            inventory=inventory,
        )
