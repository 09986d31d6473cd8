from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from rich.console import Console
from rich.table import Table

from ntptrap import settings as trap_settings

_CONSOLE = Console()


def console() -> Console:
    return _CONSOLE


def configure_logging(level: str = "INFO", log_file: Optional[Path] = None) -> logging.Logger:
    numeric = logging.getLevelName(level.upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO
    return trap_settings.setup_logging(numeric, log_file)


def render_mapping(title: str, payload: Mapping[str, Any]) -> None:
    table = Table(title=title)
    table.add_column("Field")
    table.add_column("Value")
    for key, value in payload.items():
        rendered = value if isinstance(value, str) else json.dumps(value, default=str)
        table.add_row(str(key), rendered)
    console().print(table)


def print_json(payload: Dict[str, object]) -> None:
    console().print_json(json.dumps(payload, sort_keys=True, default=str))
