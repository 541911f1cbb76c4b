"""ReportFormatter — JSON/CSV/Markdown/HTML rendering of report rows."""

from __future__ import annotations

import csv
import html
import io
import json
import logging
from typing import Any

from pivotal.reports.models import ReportFormat

logger = logging.getLogger(__name__)


def _columns(rows: list[dict[str, Any]]) -> list[str]:
    """Union of row keys in first-seen order."""
    seen: dict[str, None] = {}
    for row in rows:
        for key in row:
            seen.setdefault(key, None)
    return list(seen)


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str, sort_keys=True)
    return str(value)


class ReportFormatter:
    """Render aggregation rows in a report's output format."""

    def render(self, fmt: ReportFormat | str, rows: list[dict[str, Any]], title: str = "") -> str:
        fmt = ReportFormat(fmt)
        if fmt is ReportFormat.JSON:
            return self.to_json(rows)
        if fmt is ReportFormat.CSV:
            return self.to_csv(rows)
        if fmt is ReportFormat.MARKDOWN:
            return self.to_markdown(rows, title)
        return self.to_html(rows, title)

    def to_json(self, rows: list[dict[str, Any]]) -> str:
        """Rows as a structured JSON array."""
        return json.dumps(rows, indent=2, default=str)

    def to_csv(self, rows: list[dict[str, Any]]) -> str:
        """Rows as delimited text with a header line.

        Parameters
        ----------
        rows:
            Result rows; columns are the union of their keys.
        """
        if not rows:
            return ""
        fieldnames = _columns(rows)

        buf = io.StringIO()
        writer = csv.DictWriter(buf, fieldnames=fieldnames, extrasaction="ignore", lineterminator="\n")
        writer.writeheader()
        for row in rows:
            writer.writerow({k: _cell(row.get(k)) for k in fieldnames})
        return buf.getvalue()

    def to_markdown(self, rows: list[dict[str, Any]], title: str = "") -> str:
        lines = [f"# {title or 'Report'}", ""]
        if not rows:
            lines.extend(["_No rows._", ""])
            return "\n".join(lines)

        columns = _columns(rows)
        lines.append("| " + " | ".join(columns) + " |")
        lines.append("|" + "|".join("---" for _ in columns) + "|")
        for row in rows:
            cells = [_cell(row.get(c)).replace("|", "\\|") for c in columns]
            lines.append("| " + " | ".join(cells) + " |")

        lines.append("")
        return "\n".join(lines)

    def to_html(self, rows: list[dict[str, Any]], title: str = "") -> str:
        """Rows as a standalone HTML document."""
        heading = html.escape(title or "Report")
        columns = _columns(rows)
        header = "".join(f"<th>{html.escape(c)}</th>" for c in columns)
        body = ""
        for row in rows:
            body += "<tr>" + "".join(f"<td>{html.escape(_cell(row.get(c)))}</td>" for c in columns) + "</tr>"

        return (
            "<!DOCTYPE html><html><head><meta charset='utf-8'>"
            f"<title>{heading}</title>"
            "<style>body{font-family:sans-serif;margin:20px;}table{border-collapse:collapse;}"
            "th,td{border:1px solid #ddd;padding:8px;}th{background:#f5f5f5;}</style>"
            f"</head><body><h1>{heading}</h1>"
            f"<table><tr>{header}</tr>{body}</table></body></html>"
        )
