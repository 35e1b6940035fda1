"""Line-oriented text codec for tracking records.

Each record is one JSON object on one line (JSON Lines), so the data files
stay friendly to ``grep``, ``jq``, ``diff`` and git. Known fields are
written in declaration order; fields this version does not know about are
carried through untouched after them.
"""

import json
import logging
from pathlib import Path
from typing import Any, Iterator, TypeVar

from pydantic import ValidationError as PydanticValidationError

from tallybook.errors import MalformedRecord, ValidationError
from tallybook.tracking.types import Entity

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=Entity)


def _reject_duplicate_keys(pairs: list[tuple[str, Any]]) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for key, value in pairs:
        if key in data:
            raise MalformedRecord(f"duplicate field {key!r}")
        data[key] = value
    return data


def encode(entity: Entity) -> str:
    """Encode an entity as a single line (without the trailing newline)."""
    data = entity.model_dump(mode="json")
    return json.dumps(data, ensure_ascii=False, separators=(", ", ": "))


def decode(line: str, kind: type[E]) -> E:
    """Decode one line into an entity of the given kind.

    Args:
        line: The raw line; surrounding whitespace is ignored.
        kind: Entity class to build (``Project``, ``Task`` or ``Frame``).

    Returns:
        The decoded entity, with any unknown fields preserved as extras.

    Raises:
        MalformedRecord: If the line is not a JSON object, has duplicate or
            missing fields, or holds values the entity rejects.
    """
    text = line.strip()
    if not text:
        raise MalformedRecord("empty line")

    try:
        data = json.loads(text, object_pairs_hook=_reject_duplicate_keys)
    except json.JSONDecodeError as exc:
        raise MalformedRecord(f"invalid JSON: {exc.msg} (column {exc.colno})") from exc

    if not isinstance(data, dict):
        raise MalformedRecord(f"expected an object, got {type(data).__name__}")

    try:
        return kind.model_validate(data)
    except PydanticValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or kind.__name__}: {err['msg']}"
            for err in exc.errors()
        )
        raise MalformedRecord(f"invalid {kind.__name__.lower()}: {problems}") from exc
    except ValidationError as exc:
        raise MalformedRecord(f"invalid {kind.__name__.lower()}: {exc}") from exc


def read_records(path: Path, kind: type[E]) -> Iterator[tuple[int, E]]:
    """Yield ``(line_number, entity)`` for every non-blank line of a file.

    A missing file yields nothing. Malformed lines raise ``MalformedRecord``
    carrying the file path and 1-based line number.
    """
    if not path.exists():
        return

    with open(path, encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                yield lineno, decode(line, kind)
            except MalformedRecord as exc:
                raise MalformedRecord(exc.reason, path=path, lineno=lineno) from exc


def render_lines(entities: list[Entity]) -> str:
    """Render entities as file content, one newline-terminated line each."""
    return "".join(f"{encode(entity)}\n" for entity in entities)
