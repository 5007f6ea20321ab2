"""Audit export to portable tabular formats for compliance tooling."""

import csv
import io
import json
from pathlib import Path
from typing import Iterable, Literal

from rbac_engine.audit.models import AuditLogEntry
from rbac_engine.common.exceptions import ValidationError

ExportFormat = Literal["csv", "json"]

CSV_COLUMNS = [
    "timestamp",
    "id",
    "actor_id",
    "actor_name",
    "action",
    "entity_type",
    "entity_id",
    "entity_name",
    "summary",
    "changes",
    "reason",
    "ip_address",
    "user_agent",
    "prev_hash",
    "event_hash",
    "signature",
]


def _chronological(entries: Iterable[AuditLogEntry]) -> list[AuditLogEntry]:
    # sorted() is stable, so entries sharing a timestamp keep append order
    return sorted(entries, key=lambda e: e.timestamp)


def _row(entry: AuditLogEntry) -> dict[str, str]:
    data = entry.model_dump(mode="json")
    row = {col: "" if data.get(col) is None else str(data[col]) for col in CSV_COLUMNS if col in data}
    row["changes"] = json.dumps(data["changes"], sort_keys=True)
    row["summary"] = entry.summary
    return row


def export_entries(entries: Iterable[AuditLogEntry], format: ExportFormat = "csv") -> str:
    """Serialize entries oldest first, one row/object per entry."""
    ordered = _chronological(entries)
    if format == "csv":
        buf = io.StringIO()
        writer = csv.DictWriter(buf, fieldnames=CSV_COLUMNS, quoting=csv.QUOTE_ALL, lineterminator="\n")
        writer.writeheader()
        for entry in ordered:
            writer.writerow(_row(entry))
        return buf.getvalue()
    if format == "json":
        payload = []
        for entry in ordered:
            item = entry.model_dump(mode="json")
            item["summary"] = entry.summary
            payload.append(item)
        return json.dumps(payload, indent=2)
    raise ValidationError(f"Unsupported export format: {format!r}")


def export_to_file(
    entries: Iterable[AuditLogEntry], path: str | Path, format: ExportFormat = "csv",
) -> Path:
    """Write an export to ``path`` and return it."""
    content = export_entries(entries, format)
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8", newline="")
    return path
