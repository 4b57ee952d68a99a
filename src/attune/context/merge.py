"""Subtree paths and field-level writes on a ContextState.

A path like ``projectState.dependencies`` resolves against the ContextState
model: model-field segments are normalized to snake_case, and once a
dict-valued field is reached, the rest of the path is a single key. The
canonical form writes that key in brackets, ``project_state.files[src/app.py]``,
so dots inside keys never look like nesting.

Two canonical paths overlap when they are equal or one is an ancestor of
the other.
"""

import re
import types
import typing
from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel
from pydantic import ValidationError as SchemaError

from attune.core.errors import ValidationError

from .models import ContextState, LearningGoal

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

GOALS_FIELD = "learning_goals"


@dataclass
class FieldWrite:
    """One resolved write: canonical path, its tokens, and the new value."""

    path: str
    fields: list[str]
    key: Optional[str]
    value: Any


def to_snake(segment: str) -> str:
    """``lastUpdated`` -> ``last_updated``; snake_case passes through."""
    return _CAMEL_BOUNDARY.sub("_", segment).lower()


def _unwrap(annotation: Any) -> Any:
    """Strip Optional[...] from an annotation."""
    if typing.get_origin(annotation) in (typing.Union, types.UnionType):
        args = [a for a in typing.get_args(annotation) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return annotation


def _is_model(annotation: Any) -> bool:
    return isinstance(annotation, type) and issubclass(annotation, BaseModel)


def resolve_path(path: str) -> tuple[list[str], Optional[str]]:
    """Resolve a raw path to (model field names, dict key or None).

    Raises:
        ValidationError: If the path does not name a ContextState subtree.
    """
    segments = [s for s in path.split(".") if s]
    if not segments:
        raise ValidationError("Empty context path")

    model: type[BaseModel] = ContextState
    fields: list[str] = []
    for index, raw in enumerate(segments):
        name = to_snake(raw)
        field = model.model_fields.get(name)
        if field is None or name in ("session_id", "user_id", "version", "field_stamps", "last_updated"):
            raise ValidationError(f"Unknown context path: {path}")
        fields.append(name)

        annotation = _unwrap(field.annotation)
        rest = segments[index + 1:]
        if not rest:
            return fields, None
        if _is_model(annotation):
            model = annotation
            continue
        if typing.get_origin(annotation) is dict:
            return fields, ".".join(rest)
        raise ValidationError(f"Cannot address inside {'.'.join(fields)}: {path}")

    return fields, None


def canonical(fields: list[str], key: Optional[str] = None) -> str:
    """Canonical string form of resolved path tokens."""
    base = ".".join(fields)
    return f"{base}[{key}]" if key is not None else base


def parse_canonical(path: str) -> tuple[list[str], Optional[str]]:
    """Inverse of canonical()."""
    if path.endswith("]") and "[" in path:
        head, key = path.split("[", 1)
        return head.split("."), key[:-1]
    return path.split("."), None


def overlaps(a: str, b: str) -> bool:
    """Whether two canonical paths touch the same subtree."""
    if a == b:
        return True
    shorter, longer = sorted((a, b), key=len)
    return longer.startswith(shorter + ".") or longer.startswith(shorter + "[")


def resolve_writes(path: str, content: Any) -> list[FieldWrite]:
    """Turn one input's (path, content) into canonical field writes.

    Learning goals merge by goal id: each goal becomes its own write on
    ``learning_goals[<id>]`` so goals from different inputs never conflict
    unless they carry the same id.
    """
    fields, key = resolve_path(path)

    if fields == [GOALS_FIELD]:
        items = content if isinstance(content, list) else [content]
        writes = []
        for item in items:
            try:
                goal = item if isinstance(item, LearningGoal) else LearningGoal.model_validate(item)
            except SchemaError as e:
                raise ValidationError(f"Invalid learning goal: {e}") from e
            writes.append(FieldWrite(
                path=canonical(fields, goal.id),
                fields=fields,
                key=goal.id,
                value=goal.model_dump(),
            ))
        return writes

    if isinstance(content, BaseModel):
        content = content.model_dump()
    return [FieldWrite(path=canonical(fields, key), fields=fields, key=key, value=content)]


# =============================================================================
# Dict-level get / set
# =============================================================================


def _container(data: dict, fields: list[str]) -> dict:
    node = data
    for name in fields[:-1]:
        node = node[name]
    return node


def get_value(data: dict, path: str) -> Any:
    """Current value at a canonical path of a dumped ContextState."""
    fields, key = parse_canonical(path)
    value = _container(data, fields).get(fields[-1])
    if key is None:
        return value
    if fields == [GOALS_FIELD]:
        return next((goal for goal in value if goal["id"] == key), None)
    return (value or {}).get(key)


def set_value(data: dict, write: FieldWrite) -> None:
    """Apply a write to a dumped ContextState in place."""
    parent = _container(data, write.fields)
    name = write.fields[-1]

    if write.key is None:
        parent[name] = write.value
        return

    if write.fields == [GOALS_FIELD]:
        goals = parent[name]
        for index, goal in enumerate(goals):
            if goal["id"] == write.key:
                goals[index] = write.value
                return
        goals.append(write.value)
        return

    if parent.get(name) is None:
        parent[name] = {}
    parent[name][write.key] = write.value
