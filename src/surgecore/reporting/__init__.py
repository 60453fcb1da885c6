"""JUnit, JSON, HTML and Markdown reports."""

from .renderers import (
    RENDERERS,
    render_html,
    render_json,
    render_junit,
    render_load_markdown,
    render_markdown,
    write_load_report,
    write_reports,
)

__all__ = [
    "RENDERERS",
    "render_html",
    "render_json",
    "render_junit",
    "render_load_markdown",
    "render_markdown",
    "write_load_report",
    "write_reports",
]
