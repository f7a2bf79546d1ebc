"""Partial-update structs.

A field left at ``UNSET`` is unchanged, ``None`` clears it (only allowed for
nullable columns) and any other value replaces it.
"""
from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, ClassVar, Dict, FrozenSet

from .errors import InvalidInput


class _Unset:
    def __repr__(self):
        return 'UNSET'

    def __bool__(self):
        return False


UNSET: Any = _Unset()


class _PartialUpdate:
    NULLABLE: ClassVar[FrozenSet[str]] = frozenset()

    @classmethod
    def from_json(cls, data: Dict[str, Any]):
        """Build from a JSON object; keys missing from ``data`` stay UNSET."""
        names = {f.name for f in fields(cls)}
        unknown = set(data) - names
        if unknown:
            raise InvalidInput(f"Unknown field(s): {', '.join(sorted(unknown))}")
        return cls(**{name: data[name] for name in names if name in data})

    def changes(self) -> Dict[str, Any]:
        result = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if value is UNSET:
                continue
            if value is None and f.name not in self.NULLABLE:
                raise InvalidInput(f'{f.name} cannot be cleared.')
            result[f.name] = value
        return result


@dataclass(frozen=True)
class EquipmentUpdate(_PartialUpdate):
    NULLABLE: ClassVar[FrozenSet[str]] = frozenset({'description'})

    name: Any = UNSET
    category: Any = UNSET
    description: Any = UNSET
    total_quantity: Any = UNSET
    is_active: Any = UNSET


@dataclass(frozen=True)
class SemesterUpdate(_PartialUpdate):
    code: Any = UNSET
    name: Any = UNSET
    start_date: Any = UNSET
    end_date: Any = UNSET
    is_active: Any = UNSET
