"""Payload resolution and {{variable}} substitution."""

import re
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Union

from .models import JobPayload

PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")

Variable = Union[str, Callable[[], str]]


class PayloadError(ValueError):
    """Raised when a payload cannot be resolved to message text."""


def builtin_variables() -> Dict[str, Variable]:
    """Variables available to every payload, evaluated lazily."""
    return {
        "date": lambda: datetime.now(timezone.utc).strftime("%Y-%m-%d"),
        "time": lambda: datetime.now(timezone.utc).isoformat(),
        "timestamp": lambda: str(int(time.time() * 1000)),
    }


def substitute_variables(content: str, variables: Mapping[str, Variable]) -> str:
    """Replace {{name}} placeholders; unknown names are left as they are."""
    def replace(match: "re.Match[str]") -> str:
        value = variables.get(match.group(1))
        if value is None:
            return match.group(0)
        if callable(value):
            return value()
        return value

    return PLACEHOLDER_RE.sub(replace, content)


def _read(path: Path, kind: str) -> str:
    if not path.is_file():
        raise PayloadError(f"{kind} not found: {path}")
    return path.read_text(encoding="utf-8")


def resolve_payload(
    payload: JobPayload,
    templates_dir: Path,
    extra_vars: Optional[Mapping[str, str]] = None,
) -> str:
    """Turn a job payload into the message text to deliver.

    Variables are looked up in ``extra_vars`` first, then the payload's own
    variables, then the built-ins (date, time, timestamp).
    """
    templates_dir = Path(templates_dir)
    if payload.type == "text":
        content = payload.content or ""
    elif payload.type == "file":
        if not payload.file_path:
            raise PayloadError("filePath is required for file payload")
        path = Path(payload.file_path).expanduser()
        if not path.is_absolute():
            path = templates_dir / path
        content = _read(path, "File")
    elif payload.type == "template":
        if not payload.template:
            raise PayloadError("template name is required for template payload")
        content = _read(templates_dir / f"{payload.template}.txt", "Template")
    else:
        raise PayloadError(f"Unknown payload type: {payload.type}")

    variables: Dict[str, Variable] = builtin_variables()
    variables.update(payload.variables or {})
    variables.update(extra_vars or {})
    return substitute_variables(content, variables)
