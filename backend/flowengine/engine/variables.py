# /flowengine/engine/variables.py

import json
import math
from typing import Any, Dict, Optional

# The per-session Variable Store. Executors write variables only through a
# store they are handed; the Driver snapshots it into the returned session.

MISSING = object()


def stringify(value: Any) -> str:
    """String form used by interpolation and ==/!= comparisons."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


class VariableStore:
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._values: Dict[str, Any] = dict(initial or {})

    def __contains__(self, name: str) -> bool:
        return name in self._values

    def set(self, name: str, value: Any) -> None:
        self._values[name] = value

    def setdefault(self, name: str, value: Any) -> None:
        self._values.setdefault(name, value)

    def lookup(self, path: str) -> Any:
        """
        Resolve a name or a dotted path into nested mappings/lists
        (e.g. `crm.body.status`). Returns MISSING when any segment is absent.
        """
        head, *rest = path.split(".")
        if head not in self._values:
            return MISSING
        current = self._values[head]
        for segment in rest:
            if isinstance(current, dict) and segment in current:
                current = current[segment]
            elif isinstance(current, list) and segment.isdigit() and int(segment) < len(current):
                current = current[int(segment)]
            else:
                return MISSING
        return current

    def get(self, path: str, default: Any = None) -> Any:
        value = self.lookup(path)
        return default if value is MISSING else value

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._values)
