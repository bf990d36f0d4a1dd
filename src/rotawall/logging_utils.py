from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Union

from rich.console import Console
from rich.logging import RichHandler

from .utils import ensure_directory

DEFAULT_LABEL_WIDTH = 18
DEFAULT_INDENT = "    "
FILE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

FieldMapping = Union[Mapping[str, object], Sequence[tuple[str, object]]]


def _coerce_items(fields: FieldMapping) -> list[tuple[str, object]]:
    if isinstance(fields, Mapping):
        return list(fields.items())
    return list(fields)


def _stringify(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    if isinstance(value, float):
        return f"{value:.2f}"
    if isinstance(value, (list, tuple, set)):
        return ", ".join(_stringify(item) for item in value)
    return str(value)


def render_fields_block(title: str, fields: FieldMapping, *, pad_top: bool = False) -> str:
    """Render a titled block of ``label: value`` lines for a log message."""
    items = _coerce_items(fields)
    lines: list[str] = [""] if pad_top else []
    lines.append(title)
    if items:
        label_width = min(max(len(str(key)) for key, _ in items), DEFAULT_LABEL_WIDTH)
        for key, value in items:
            lines.append(f"{DEFAULT_INDENT}{str(key):<{label_width}}: {_stringify(value)}")
    return "\n".join(lines)


def _coerce_level(value: str | int | None, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.strip().upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {value}")
    return level


def configure_logging(
    level: str | int | None = None,
    *,
    console_level: str | int | None = None,
    log_file: Path | None = None,
    console: Console | None = None,
) -> None:
    """Install a rich console handler and an optional file handler on the root logger."""
    root_level = _coerce_level(level, logging.INFO)
    handler_level = _coerce_level(console_level, root_level)

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    console_handler.setLevel(handler_level)
    root.addHandler(console_handler)

    if log_file is not None:
        ensure_directory(log_file.parent)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        file_handler.setLevel(root_level)
        root.addHandler(file_handler)

    root.setLevel(min(root_level, handler_level))
