"""
Script rewriting applied between loading and execution.

Stages run in a fixed order, each switched on independently:

1. filegroup strategy (autoRemap keeps references, removeToPrimary rewrites
   them to PRIMARY) plus SQLCMD placeholder resolution in FileGroup scripts
2. FILESTREAM stripping
3. Always Encrypted stripping

Every rewrite is a narrow regex pass over one construct. Running a stage on
its own output changes nothing.
"""

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Set

from .catalog import (ObjectType, ScriptUnit, SkipReason, has_statements, join_batches,
                      split_batches)

logger = logging.getLogger(__name__)

AUTO_REMAP = 'autoRemap'
REMOVE_TO_PRIMARY = 'removeToPrimary'
FILEGROUP_STRATEGIES = (AUTO_REMAP, REMOVE_TO_PRIMARY)

PRIMARY = 'PRIMARY'

# ") ON [X]" storage clause. A name followed by "(" is a partition scheme
# reference, one followed by "." is a schema-qualified object.
_ON_FILEGROUP = re.compile(r'(\)\s*ON\s*)\[([^\]]+)\](?!\s*[.(])', re.IGNORECASE)
_TEXTIMAGE_ON = re.compile(r'(\bTEXTIMAGE_ON\s*)\[([^\]]+)\]', re.IGNORECASE)
_FILESTREAM_ON = re.compile(r'(\bFILESTREAM_ON\s*)\[([^\]]+)\]', re.IGNORECASE)
_PARTITION_SCHEME_TO = re.compile(
    r'(\bAS\s+PARTITION\s+(?:\[[^\]]+\]|\w+)\s+)(ALL\s+)?TO\s*\(([^)]*)\)', re.IGNORECASE)
_BRACKETED = re.compile(r'\[([^\]]+)\]')

_ADD_FILEGROUP = re.compile(
    r'\bADD\s+FILEGROUP\s+\[([^\]]+)\](?:\s+CONTAINS\s+(FILESTREAM|MEMORY_OPTIMIZED_DATA))?',
    re.IGNORECASE)
_TO_FILEGROUP = re.compile(r'\bTO\s+FILEGROUP\s+\[([^\]]+)\]', re.IGNORECASE)

_FILESTREAM_ON_CLAUSE = re.compile(
    r'[ \t]*\bFILESTREAM_ON\s*(?:\[[^\]]*\]|"[^"]*"|\w+)', re.IGNORECASE)
_FILESTREAM_COLUMN = re.compile(
    r'(\[?varbinary\]?\s*\(\s*max\s*\))\s+FILESTREAM\b', re.IGNORECASE)

_ENCRYPTED_WITH = re.compile(r'\s*\bENCRYPTED\s+WITH\s*\(', re.IGNORECASE)
_COLUMN_KEY = re.compile(r'\bCREATE\s+COLUMN\s+(?:MASTER|ENCRYPTION)\s+KEY\b', re.IGNORECASE)

_SQLCMD_VARIABLE = re.compile(r'\$\((\w+?)_(PATH_FILE|PATH|SIZE|GROWTH)\)')
_LOGICAL_FILE_NAME = re.compile(r"\bNAME\s*=\s*N?'([^']+)'", re.IGNORECASE)

_LINE_COMMENT = re.compile(r'--[^\n]*')
_BLOCK_COMMENT = re.compile(r'/\*.*?\*/', re.DOTALL)


def _code_only(sql_text: str) -> str:
    return _LINE_COMMENT.sub('', _BLOCK_COMMENT.sub('', sql_text))


def _is_primary(name: str) -> bool:
    return name.strip().strip('"').upper() == PRIMARY


@dataclass
class FileGroupInventory:
    """Filegroups declared by the catalog's FileGroup scripts, by kind."""
    rows: Set[str] = field(default_factory=set)
    filestream: Set[str] = field(default_factory=set)
    memory_optimized: Set[str] = field(default_factory=set)

    @classmethod
    def discover(cls, units: List[ScriptUnit]) -> 'FileGroupInventory':
        inventory = cls()
        for unit in units:
            if unit.object_type == ObjectType.FILE_GROUP:
                inventory.scan(unit.raw_content)
        return inventory

    def scan(self, sql_text: str):
        for match in _ADD_FILEGROUP.finditer(_code_only(sql_text)):
            name, kind = match.group(1), (match.group(2) or '').upper()
            if kind == 'FILESTREAM':
                self.filestream.add(name.upper())
            elif kind == 'MEMORY_OPTIMIZED_DATA':
                self.memory_optimized.add(name.upper())
            else:
                self.rows.add(name.upper())

    def is_filestream(self, name: str) -> bool:
        return name.upper() in self.filestream

    def is_memory_optimized(self, name: str) -> bool:
        return name.upper() in self.memory_optimized


def batch_filegroup(batch: str) -> Optional[str]:
    """Name of the filegroup a FileGroup-script batch creates or adds a file to."""
    code = _code_only(batch)
    match = _ADD_FILEGROUP.search(code) or _TO_FILEGROUP.search(code)
    return match.group(1) if match else None


def filter_batches(sql_text: str, keep: Callable[[str], bool]) -> str:
    """Drop batches for which ``keep`` is false; untouched text is returned as-is."""
    batches = split_batches(sql_text)
    kept = [(batch, count) for batch, count in batches if keep(batch)]
    if len(kept) == len(batches):
        return sql_text
    return join_batches(kept)


# ---------------------------------------------------------------------------
# Filegroup strategy
# ---------------------------------------------------------------------------

def remove_to_primary(sql_text: str, exempt: Set[str] = frozenset()) -> str:
    """Point every non-PRIMARY storage clause at PRIMARY.

    Partition scheme references ``ON [PS](col)`` are left alone; partition
    scheme bodies collapse to ``ALL TO ([PRIMARY])``. Names in ``exempt``
    (memory-optimized filegroups) are never touched.
    """
    exempt_upper = {name.upper() for name in exempt}

    def to_primary(match):
        name = match.group(2)
        if _is_primary(name) or name.upper() in exempt_upper:
            return match.group(0)
        return f"{match.group(1)}[{PRIMARY}]"

    sql_text = _ON_FILEGROUP.sub(to_primary, sql_text)
    sql_text = _TEXTIMAGE_ON.sub(to_primary, sql_text)
    sql_text = _FILESTREAM_ON.sub(to_primary, sql_text)

    def collapse_scheme(match):
        names = _BRACKETED.findall(match.group(3)) or [
            n.strip() for n in match.group(3).split(',') if n.strip()]
        if all(_is_primary(n) or n.upper() in exempt_upper for n in names):
            return match.group(0)
        return f"{match.group(1)}ALL TO ([{PRIMARY}])"

    return _PARTITION_SCHEME_TO.sub(collapse_scheme, sql_text)


def find_filegroup_references(sql_text: str) -> List[str]:
    """Non-PRIMARY filegroups a script stores data on, in order of appearance."""
    code = _code_only(sql_text)
    found = []
    for pattern in (_ON_FILEGROUP, _TEXTIMAGE_ON, _FILESTREAM_ON):
        for match in pattern.finditer(code):
            found.append((match.start(), match.group(2)))
    for match in _PARTITION_SCHEME_TO.finditer(code):
        for name in _BRACKETED.findall(match.group(3)):
            found.append((match.start(3), name))

    names, seen = [], set()
    for _, name in sorted(found):
        if _is_primary(name) or name.upper() in seen:
            continue
        seen.add(name.upper())
        names.append(name)
    return names


def keep_memory_optimized_only(sql_text: str, inventory: FileGroupInventory) -> str:
    """Reduce a FileGroup script to its memory-optimized filegroup blocks."""
    def keep(batch):
        name = batch_filegroup(batch)
        return name is not None and inventory.is_memory_optimized(name)
    return filter_batches(sql_text, keep)


def resolve_filegroup_variables(sql_text: str, layout) -> str:
    """Fill $(FG_PATH_FILE) / $(FG_PATH) / $(FG_SIZE) / $(FG_GROWTH) placeholders.

    ``layout`` is a FileGroupLayout; placeholders it cannot answer stay put.
    """
    def replace(match):
        filegroup, kind = match.group(1), match.group(2)
        if kind == 'SIZE':
            value = layout.size_for(filegroup)
        elif kind == 'GROWTH':
            value = layout.growth_for(filegroup)
        elif kind == 'PATH':
            value = layout.directory_for(filegroup)
        else:
            names = _LOGICAL_FILE_NAME.findall(sql_text, 0, match.start())
            value = layout.file_path_for(filegroup, names[-1]) if names else None
        return value if value is not None else match.group(0)

    return _SQLCMD_VARIABLE.sub(replace, sql_text)


# ---------------------------------------------------------------------------
# FILESTREAM
# ---------------------------------------------------------------------------

def strip_filestream(sql_text: str, inventory: Optional[FileGroupInventory] = None) -> str:
    """Remove FILESTREAM storage clauses, column attributes and filegroups."""
    sql_text = _FILESTREAM_ON_CLAUSE.sub('', sql_text)
    sql_text = _FILESTREAM_COLUMN.sub(r'\1', sql_text)

    local = FileGroupInventory()
    local.scan(sql_text)
    filestream = set(local.filestream)
    if inventory is not None:
        filestream |= inventory.filestream
    if not filestream:
        return sql_text

    def keep(batch):
        name = batch_filegroup(batch)
        return name is None or name.upper() not in filestream
    return filter_batches(sql_text, keep)


# ---------------------------------------------------------------------------
# Always Encrypted
# ---------------------------------------------------------------------------

def _closing_paren(sql_text: str, open_index: int) -> int:
    """Index of the parenthesis closing the one at ``open_index``, or -1."""
    depth = 0
    in_string = False
    i = open_index
    while i < len(sql_text):
        ch = sql_text[i]
        if in_string:
            if ch == "'":
                if i + 1 < len(sql_text) and sql_text[i + 1] == "'":
                    i += 1
                else:
                    in_string = False
        elif ch == "'":
            in_string = True
        elif ch == '(':
            depth += 1
        elif ch == ')':
            depth -= 1
            if depth == 0:
                return i
        i += 1
    return -1


def remove_encrypted_with(sql_text: str) -> str:
    """Remove ``ENCRYPTED WITH (...)`` clauses, however many lines they span."""
    pieces = []
    position = 0
    while True:
        match = _ENCRYPTED_WITH.search(sql_text, position)
        if not match:
            break
        close = _closing_paren(sql_text, match.end() - 1)
        if close < 0:
            logger.warning("Unbalanced ENCRYPTED WITH clause left in place")
            break
        pieces.append(sql_text[position:match.start()])
        position = close + 1
    pieces.append(sql_text[position:])
    return ''.join(pieces)


def strip_always_encrypted(sql_text: str) -> str:
    """Drop column encryption clauses and column key creation batches."""
    sql_text = remove_encrypted_with(sql_text)
    return filter_batches(sql_text, lambda batch: not _COLUMN_KEY.search(_code_only(batch)))


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

@dataclass
class PipelineOptions:
    filegroup_strategy: str = AUTO_REMAP
    strip_filestream: bool = False
    strip_always_encrypted: bool = False
    # Dev mode and removeToPrimary keep only memory-optimized filegroups
    memory_optimized_filegroups_only: bool = False
    empty_filegroup_reason: SkipReason = SkipReason.EMPTY_SCRIPT


class TransformationPipeline:
    """Applies the rewrite stages to units in place."""

    def __init__(self, options: PipelineOptions, inventory: FileGroupInventory, layout=None):
        self.options = options
        self.inventory = inventory
        self.layout = layout

    def rewrite(self, unit: ScriptUnit) -> Optional[SkipReason]:
        """Rewrite one unit's content. Returns a skip reason when nothing is left to run."""
        options = self.options
        content = unit.raw_content
        is_filegroup_script = unit.object_type == ObjectType.FILE_GROUP

        if is_filegroup_script:
            if options.memory_optimized_filegroups_only:
                content = keep_memory_optimized_only(content, self.inventory)
                if not has_statements(content):
                    unit.raw_content = content
                    return options.empty_filegroup_reason
            if self.layout is not None:
                content = resolve_filegroup_variables(content, self.layout)
        elif options.filegroup_strategy == REMOVE_TO_PRIMARY:
            content = remove_to_primary(content, self.inventory.memory_optimized)

        if options.strip_filestream:
            before = content
            content = strip_filestream(content, self.inventory)
            if has_statements(before) and not has_statements(content):
                unit.raw_content = content
                return SkipReason.DEV_MODE_FILE_STREAM

        if options.strip_always_encrypted:
            before = content
            content = strip_always_encrypted(content)
            if has_statements(before) and not has_statements(content):
                unit.raw_content = content
                return SkipReason.DEV_MODE_ALWAYS_ENCRYPTED

        unit.raw_content = content
        if not split_batches(content):
            return SkipReason.EMPTY_SCRIPT
        return None

    def apply(self, units: List[ScriptUnit], workers: int = 4) -> int:
        """Rewrite every pending unit, skipping those left empty. Returns the skip count."""
        pending = [unit for unit in units if not unit.is_skipped]
        with ThreadPoolExecutor(max_workers=max(1, workers)) as pool:
            reasons = list(pool.map(self.rewrite, pending))

        skipped = 0
        for unit, reason in zip(pending, reasons):
            if reason is not None:
                unit.skip(reason)
                skipped += 1
                logger.info(f"Skipping {unit.path}: {reason}")
        return skipped
