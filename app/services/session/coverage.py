"""Mandatory topic coverage for an intake call."""
from typing import Any, Dict, List, Mapping, Sequence

from app.services.intake.base import CoverageCategory


def has_value(value: Any) -> bool:
    """Check whether an extracted value carries any content."""
    if value is None:
        return False
    if isinstance(value, str):
        return bool(value.strip())
    if isinstance(value, Mapping):
        return any(has_value(v) for v in value.values())
    if isinstance(value, (list, tuple, set)):
        return any(has_value(v) for v in value)
    return True


class CoverageTracker:
    """Tracks which mandatory clinical topics have been mentioned.

    Flags are set by extracted fields and never clear.
    """

    def __init__(self, categories: Sequence[CoverageCategory]):
        self._categories = list(categories)
        self._covered: Dict[str, bool] = {c.name: False for c in self._categories}
        self._field_map: Dict[str, str] = {}
        for category in self._categories:
            for field in category.fields:
                self._field_map[field.lower()] = category.name

    @property
    def flags(self) -> Dict[str, bool]:
        """Copy of the coverage flags keyed by category name."""
        return dict(self._covered)

    def record(self, fields: Mapping[str, Any]) -> List[str]:
        """Set flags for every mapped field with a value.

        Returns the names of categories that became covered by this call.
        """
        newly_covered = []
        for key, value in fields.items():
            name = self._field_map.get(str(key).lower())
            if name is None or self._covered[name]:
                continue
            if has_value(value):
                self._covered[name] = True
                newly_covered.append(name)
        return newly_covered

    def is_covered(self, name: str) -> bool:
        return self._covered.get(name, False)

    def is_complete(self) -> bool:
        return all(self._covered.values())

    def missing_categories(self) -> List[str]:
        """Human-readable prompts for uncovered categories, in protocol order."""
        return [c.prompt for c in self._categories if not self._covered[c.name]]

    def missing_labels(self) -> List[str]:
        return [c.label for c in self._categories if not self._covered[c.name]]
