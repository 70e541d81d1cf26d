# /flowengine/engine/interpolation.py

import re
from typing import Any, Mapping, Union

from flowengine.engine.variables import MISSING, VariableStore, stringify

# Resolves `{{name}}` placeholders. Unresolved names are left verbatim, so
# interpolation never fails and can be applied repeatedly.

PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z_]\w*(?:\.\w+)*)\s*\}\}")


def _as_store(variables: Union[VariableStore, Mapping[str, Any]]) -> VariableStore:
    return variables if isinstance(variables, VariableStore) else VariableStore(dict(variables))


def interpolate(text: str | None, variables: Union[VariableStore, Mapping[str, Any]]) -> str:
    if not text:
        return text or ""
    store = _as_store(variables)

    def _replace(match: re.Match) -> str:
        value = store.lookup(match.group(1))
        if value is MISSING:
            return match.group(0)
        return stringify(value)

    return PLACEHOLDER_RE.sub(_replace, text)


def interpolate_object(obj: Any, variables: Union[VariableStore, Mapping[str, Any]]) -> Any:
    """Interpolate every string inside a nested dict/list document."""
    store = _as_store(variables)
    if isinstance(obj, str):
        return interpolate(obj, store)
    if isinstance(obj, list):
        return [interpolate_object(item, store) for item in obj]
    if isinstance(obj, dict):
        return {key: interpolate_object(value, store) for key, value in obj.items()}
    return obj
