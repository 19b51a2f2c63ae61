from __future__ import annotations

import html
from functools import lru_cache
from pathlib import Path
from string import Template
from typing import Any


TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"
MISSING_TEMPLATE = "<h1>Page unavailable</h1>"


@lru_cache(maxsize=16)
def _load(filename: str) -> Template | None:
    path = TEMPLATE_DIR / filename
    if not path.is_file():
        return None
    return Template(path.read_text(encoding="utf-8"))


def render_template(filename: str, context: dict[str, Any]) -> str:
    """Fill ``$placeholders`` in a page template; values are HTML-escaped."""
    template = _load(filename)
    if template is None:
        return MISSING_TEMPLATE
    values = {key: "" if value is None else html.escape(str(value)) for key, value in context.items()}
    return template.safe_substitute(values)
