"""Shared helpers for the Django admin."""

import json

from django.utils.html import format_html


def prettify_json(value) -> str:
    """Render a JSONField value as an indented ``<pre>`` block."""
    if value in (None, "", [], {}):
        return "-"
    return format_html(
        '<pre style="white-space: pre-wrap; max-height: 400px; overflow: auto;">{}</pre>',
        json.dumps(value, indent=2, sort_keys=True, default=str),
    )
