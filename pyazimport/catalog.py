"""
Catalog loading.

A catalog is the directory tree written by the exporter:

    00_FileGroups/001_FileGroups.sql
    09_Tables_PrimaryKey/dbo.Customers.sql
    14_Programmability/02_Functions/dbo.fn_Total.sql
    21_Data/dbo.Customers.data.sql
    manifest.json              (optional)

Phase is the numeric prefix of the top-level folder, sub-phase the numeric
prefix of the folder below Programmability. Object type comes from a fixed
lookup of the folder name.
"""

import json
import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from .errors import CatalogNotFoundError, CatalogReadError

logger = logging.getLogger(__name__)

MANIFEST_NAMES = ('manifest.json', 'export-manifest.json')


class ObjectType(str, Enum):
    FILE_GROUP = 'FileGroup'
    SECURITY = 'Security'
    DATABASE_CONFIGURATION = 'DatabaseConfiguration'
    SCHEMA = 'Schema'
    SEQUENCE = 'Sequence'
    PARTITION_FUNCTION = 'PartitionFunction'
    PARTITION_SCHEME = 'PartitionScheme'
    USER_DEFINED_TYPE = 'UserDefinedType'
    XML_SCHEMA_COLLECTION = 'XmlSchemaCollection'
    TABLE = 'Table'
    FOREIGN_KEY = 'ForeignKey'
    INDEX = 'Index'
    DEFAULT = 'Default'
    RULE = 'Rule'
    FUNCTION = 'Function'
    STORED_PROCEDURE = 'StoredProcedure'
    TRIGGER = 'Trigger'
    VIEW = 'View'
    ASSEMBLY = 'Assembly'
    SYNONYM = 'Synonym'
    FULL_TEXT_CATALOG = 'FullTextCatalog'
    EXTERNAL_DATA = 'ExternalData'
    SEARCH_PROPERTY_LIST = 'SearchPropertyList'
    PLAN_GUIDE = 'PlanGuide'
    SECURITY_POLICY = 'SecurityPolicy'
    DATA = 'Data'

    def __str__(self) -> str:
        return self.value


# Folder name (numeric prefix stripped) -> object type
FOLDER_TYPES: Dict[str, ObjectType] = {
    'FileGroups': ObjectType.FILE_GROUP,
    'Security': ObjectType.SECURITY,
    'DatabaseConfiguration': ObjectType.DATABASE_CONFIGURATION,
    'Schemas': ObjectType.SCHEMA,
    'Sequences': ObjectType.SEQUENCE,
    'PartitionFunctions': ObjectType.PARTITION_FUNCTION,
    'PartitionSchemes': ObjectType.PARTITION_SCHEME,
    'Types': ObjectType.USER_DEFINED_TYPE,
    'XmlSchemaCollections': ObjectType.XML_SCHEMA_COLLECTION,
    'Tables_PrimaryKey': ObjectType.TABLE,
    'Tables': ObjectType.TABLE,
    'Tables_ForeignKeys': ObjectType.FOREIGN_KEY,
    'Indexes': ObjectType.INDEX,
    'Defaults': ObjectType.DEFAULT,
    'Rules': ObjectType.RULE,
    'Synonyms': ObjectType.SYNONYM,
    'FullTextSearch': ObjectType.FULL_TEXT_CATALOG,
    'ExternalData': ObjectType.EXTERNAL_DATA,
    'SearchPropertyLists': ObjectType.SEARCH_PROPERTY_LIST,
    'PlanGuides': ObjectType.PLAN_GUIDE,
    'SecurityPolicies': ObjectType.SECURITY_POLICY,
    'Data': ObjectType.DATA,
}

PROGRAMMABILITY_FOLDER = 'Programmability'

PROGRAMMABILITY_TYPES: Dict[str, ObjectType] = {
    'Assemblies': ObjectType.ASSEMBLY,
    'Functions': ObjectType.FUNCTION,
    'StoredProcedures': ObjectType.STORED_PROCEDURE,
    'Triggers': ObjectType.TRIGGER,
    'Views': ObjectType.VIEW,
}

# Exporter file-name suffixes that fix the object type whatever the folder
FILE_TYPE_SUFFIXES: Dict[str, ObjectType] = {
    'securitypolicy': ObjectType.SECURITY_POLICY,
    'data': ObjectType.DATA,
}

_FOLDER_PREFIX = re.compile(r'^(\d+)_(.+)$')

# GO [count] [-- comment], alone on its line
_GO_LINE = re.compile(r'^[ \t]*GO(?:[ \t]+(\d+))?[ \t]*(?:--.*)?$', re.IGNORECASE)
_LINE_COMMENT = re.compile(r'--[^\n]*')
_BLOCK_COMMENT = re.compile(r'/\*.*?\*/', re.DOTALL)


class UnitStatus(str, Enum):
    PENDING = 'Pending'
    APPLIED = 'Applied'
    SKIPPED = 'Skipped'
    FAILED_DEFERRED = 'Failed-Deferred'
    FAILED_FATAL = 'Failed-Fatal'
    FAILED_PERMANENT = 'Failed-Permanent'

    def __str__(self) -> str:
        return self.value


class SkipReason(str, Enum):
    EXCLUDED_BY_TYPE = 'ExcludedByType'
    EXCLUDED_BY_SCHEMA = 'ExcludedBySchema'
    EXCLUDED_BY_NAME = 'ExcludedByName'
    DEV_MODE_FILE_GROUP = 'DevMode_FileGroup'
    DEV_MODE_DATABASE_CONFIGURATION = 'DevMode_DatabaseConfiguration'
    DEV_MODE_SECURITY_POLICY = 'DevMode_SecurityPolicy'
    DEV_MODE_EXTERNAL_DATA = 'DevMode_ExternalData'
    DEV_MODE_ALWAYS_ENCRYPTED = 'DevMode_AlwaysEncrypted'
    DEV_MODE_FILE_STREAM = 'DevMode_FileStream'
    DEV_MODE_CLR_ASSEMBLY = 'DevMode_CLRAssembly'
    EMPTY_SCRIPT = 'EmptyScript'

    def __str__(self) -> str:
        return self.value


def _normalize_type_key(name: str) -> str:
    return re.sub(r'[^a-z]', '', name.lower())


_TYPE_ALIASES: Dict[str, ObjectType] = {}
for _folder, _type in list(FOLDER_TYPES.items()) + list(PROGRAMMABILITY_TYPES.items()):
    _TYPE_ALIASES[_normalize_type_key(_folder)] = _type
for _type in ObjectType:
    _TYPE_ALIASES[_normalize_type_key(_type.value)] = _type
    _TYPE_ALIASES[_normalize_type_key(_type.name)] = _type
_TYPE_ALIASES.update({
    'procedures': ObjectType.STORED_PROCEDURE,
    'procedure': ObjectType.STORED_PROCEDURE,
    'foreignkeys': ObjectType.FOREIGN_KEY,
    'filegroups': ObjectType.FILE_GROUP,
    'securitypolicies': ObjectType.SECURITY_POLICY,
    'fulltextcatalogs': ObjectType.FULL_TEXT_CATALOG,
    'userdefinedtypes': ObjectType.USER_DEFINED_TYPE,
    'planguides': ObjectType.PLAN_GUIDE,
})


def resolve_object_type(name: str) -> Union[ObjectType, str]:
    """Map a type name, plural or folder name to an ObjectType.

    Unknown names come back unchanged so free-form tags still compare.
    """
    return _TYPE_ALIASES.get(_normalize_type_key(name), name)


@dataclass
class ScriptUnit:
    path: str                      # relative to the catalog root, '/' separated
    phase: int
    sub_phase: int
    object_type: Union[ObjectType, str]
    schema: Optional[str]
    name: str
    raw_content: str
    status: UnitStatus = UnitStatus.PENDING
    attempt_count: int = 0
    skip_reason: Optional[SkipReason] = None

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}" if self.schema else self.name

    def skip(self, reason: SkipReason):
        self.status = UnitStatus.SKIPPED
        self.skip_reason = reason

    @property
    def is_skipped(self) -> bool:
        return self.status == UnitStatus.SKIPPED

    def describe(self) -> Dict:
        return {
            'type': str(self.object_type),
            'schema': self.schema,
            'name': self.name,
            'filePath': self.path,
        }


@dataclass(frozen=True)
class SkipRecord:
    unit: ScriptUnit
    reason: SkipReason


def skip_records(units: List[ScriptUnit]) -> List[SkipRecord]:
    return [SkipRecord(unit, unit.skip_reason) for unit in units if unit.is_skipped]


@dataclass
class Catalog:
    root: Path
    units: List[ScriptUnit]
    exported_object_count: int
    exported_objects: List[Dict] = field(default_factory=list)
    manifest_path: Optional[Path] = None


def split_batches(sql_text: str) -> List[Tuple[str, int]]:
    """Split a script on GO separators.

    Returns (batch, repeat_count) pairs. Batches with nothing but whitespace
    and comments are dropped.
    """
    batches: List[Tuple[str, int]] = []
    current: List[str] = []

    def flush(count: int):
        batch = '\n'.join(current).strip('\n')
        current.clear()
        if has_statements(batch):
            batches.append((batch, count))

    for line in sql_text.splitlines():
        match = _GO_LINE.match(line)
        if match:
            flush(int(match.group(1)) if match.group(1) else 1)
        else:
            current.append(line)
    flush(1)
    return batches


def join_batches(batches: List[Tuple[str, int]]) -> str:
    """Inverse of split_batches."""
    parts = []
    for batch, count in batches:
        parts.append(batch)
        parts.append('GO' if count == 1 else f'GO {count}')
    return '\n'.join(parts) + '\n' if parts else ''


def has_statements(sql_text: str) -> bool:
    """True when the text holds anything besides comments and whitespace."""
    stripped = _BLOCK_COMMENT.sub('', sql_text)
    stripped = _LINE_COMMENT.sub('', stripped)
    return bool(stripped.strip())


def _split_prefix(folder_name: str) -> Tuple[Optional[int], str]:
    match = _FOLDER_PREFIX.match(folder_name)
    if not match:
        return None, folder_name
    return int(match.group(1)), match.group(2)


def _lookup_folder(name: str, table: Dict[str, ObjectType]) -> Union[ObjectType, str]:
    lowered = {key.lower(): value for key, value in table.items()}
    return lowered.get(name.lower(), name)


def _type_marker(stem: str) -> Tuple[str, Optional[ObjectType]]:
    """Strip an exporter type suffix (``Sales.Policy.securitypolicy``) from a file stem."""
    parts = stem.split('.')
    if len(parts) >= 3:
        marker = FILE_TYPE_SUFFIXES.get(parts[-1].lower())
        if marker is not None:
            return '.'.join(parts[:-1]), marker
    return stem, None


def _split_object_name(file_path: Path) -> Tuple[Optional[str], str]:
    base, _ = _type_marker(file_path.stem)
    if '.' in base:
        schema_name, object_name = base.split('.', 1)
        return schema_name, object_name
    return None, base


def classify_path(relative: Path) -> Tuple[int, int, Union[ObjectType, str]]:
    """Derive (phase, sub_phase, object_type) from a path relative to the catalog root."""
    parts = relative.parts
    if len(parts) < 2:
        # Loose file at the catalog root
        return 0, 0, 'Unknown'

    phase, folder = _split_prefix(parts[0])
    if phase is None:
        phase = 0
    object_type = _lookup_folder(folder, FOLDER_TYPES)

    sub_phase = 0
    if folder.lower() == PROGRAMMABILITY_FOLDER.lower():
        object_type = PROGRAMMABILITY_FOLDER
        if len(parts) > 2:
            nested, sub_folder = _split_prefix(parts[1])
            sub_phase = nested if nested is not None else 0
            object_type = _lookup_folder(sub_folder, PROGRAMMABILITY_TYPES)

    _, marker = _type_marker(relative.stem)
    if marker is not None:
        object_type = marker
    return phase, sub_phase, object_type


def _read_script(file_path: Path) -> str:
    # utf-8-sig drops the BOM SSMS likes to write
    try:
        with open(file_path, 'r', encoding='utf-8-sig') as f:
            return f.read()
    except UnicodeDecodeError as e:
        raise CatalogReadError(f"Script {file_path} is not valid UTF-8: {e}") from e
    except OSError as e:
        raise CatalogReadError(f"Cannot read script {file_path}: {e}") from e


def _load_manifest(root: Path) -> Tuple[Optional[Path], Optional[Dict]]:
    for manifest_name in MANIFEST_NAMES:
        manifest_path = root / manifest_name
        if not manifest_path.exists():
            continue
        try:
            with open(manifest_path, 'r', encoding='utf-8-sig') as f:
                manifest = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable manifest {manifest_path}: {e}")
            return None, None
        if not isinstance(manifest, dict):
            logger.warning(f"Ignoring manifest {manifest_path}: expected a JSON object")
            return None, None
        return manifest_path, manifest
    return None, None


def _reconcile(manifest_objects: List[Dict], units: List[ScriptUnit]):
    on_disk = {unit.path.lower() for unit in units}
    listed = set()
    for entry in manifest_objects:
        file_path = str(entry.get('filePath') or '').replace('\\', '/').lower()
        if not file_path:
            continue
        listed.add(file_path)
        if file_path not in on_disk:
            logger.warning(f"Manifest lists {file_path} but the file is missing from the catalog")
    if listed:
        for unit in units:
            if unit.path.lower() not in listed:
                logger.warning(f"Script {unit.path} is not listed in the manifest")


def load_catalog(root, workers: int = 4) -> Catalog:
    """Load every script under ``root`` in execution order."""
    root = Path(root)
    if not root.is_dir():
        raise CatalogNotFoundError(f"Catalog directory not found: {root}")

    files = [p for p in root.rglob('*.sql') if p.is_file()]
    entries = []
    for file_path in files:
        relative = file_path.relative_to(root)
        phase, sub_phase, object_type = classify_path(relative)
        entries.append((phase, sub_phase, relative.as_posix(), file_path, object_type))
    entries.sort(key=lambda e: (e[0], e[1], e[2]))

    with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
        contents = list(pool.map(_read_script, [e[3] for e in entries]))

    units: List[ScriptUnit] = []
    for (phase, sub_phase, relative, file_path, object_type), content in zip(entries, contents):
        schema_name, object_name = _split_object_name(file_path)
        units.append(ScriptUnit(
            path=relative,
            phase=phase,
            sub_phase=sub_phase,
            object_type=object_type,
            schema=schema_name,
            name=object_name,
            raw_content=content,
        ))

    manifest_path, manifest = _load_manifest(root)
    exported_objects: List[Dict] = []
    exported_count = len(units)
    if manifest is not None:
        exported_objects = [o for o in (manifest.get('objects') or []) if isinstance(o, dict)]
        count = manifest.get('objectCount')
        if isinstance(count, int):
            exported_count = count
        elif exported_objects:
            exported_count = len(exported_objects)
        _reconcile(exported_objects, units)
        logger.info(f"Manifest {manifest_path.name}: {exported_count} exported objects")
    if not exported_objects:
        exported_objects = [unit.describe() for unit in units]

    logger.info(f"Loaded catalog {root}: {len(units)} scripts in "
                f"{len({u.phase for u in units})} phases")
    return Catalog(
        root=root,
        units=units,
        exported_object_count=exported_count,
        exported_objects=exported_objects,
        manifest_path=manifest_path,
    )
