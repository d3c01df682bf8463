"""Exclusion filter: marks units Skipped by object type, schema or name pattern."""

import fnmatch
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Set

from .catalog import ScriptUnit, SkipReason, resolve_object_type

logger = logging.getLogger(__name__)


@dataclass
class ExclusionRules:
    object_types: Set[str] = field(default_factory=set)
    schemas: Set[str] = field(default_factory=set)
    object_patterns: List[str] = field(default_factory=list)

    @classmethod
    def from_values(cls, object_types: Iterable[str] = (), schemas: Iterable[str] = (),
                    object_patterns: Iterable[str] = ()) -> 'ExclusionRules':
        return cls(
            object_types={str(resolve_object_type(t)).lower() for t in object_types if t},
            schemas={s.lower() for s in schemas if s},
            object_patterns=[p.lower() for p in object_patterns if p],
        )

    def is_empty(self) -> bool:
        return not (self.object_types or self.schemas or self.object_patterns)

    def match(self, unit: ScriptUnit) -> Optional[SkipReason]:
        """Return the reason the unit is excluded, or None.

        Type is checked first, then schema, then name pattern.
        """
        if str(unit.object_type).lower() in self.object_types:
            return SkipReason.EXCLUDED_BY_TYPE
        if unit.schema and unit.schema.lower() in self.schemas:
            return SkipReason.EXCLUDED_BY_SCHEMA
        qualified = unit.qualified_name.lower()
        for pattern in self.object_patterns:
            if fnmatch.fnmatchcase(qualified, pattern):
                return SkipReason.EXCLUDED_BY_NAME
        return None


def choose_exclusions(cli_values: Optional[List[str]], config_values: Optional[List[str]]) -> List[str]:
    """CLI values replace the config-file list outright, they never merge."""
    if cli_values is not None:
        return list(cli_values)
    return list(config_values or [])


def apply_exclusions(units: List[ScriptUnit], rules: ExclusionRules) -> int:
    """Mark matching pending units Skipped. Returns the number excluded."""
    if rules.is_empty():
        return 0
    excluded = 0
    for unit in units:
        if unit.is_skipped:
            continue
        reason = rules.match(unit)
        if reason is not None:
            unit.skip(reason)
            excluded += 1
            logger.debug(f"Excluded {unit.path} ({reason})")
    if excluded:
        logger.info(f"Exclusion rules skipped {excluded} scripts")
    return excluded
