"""
Record Export

Turns stored records into bytes for download. CSV and JSON are rendered here;
any other format goes to an external renderer with the same call signature:

    renderer(record_type, records, selected_fields, fmt) -> bytes
"""

import csv
import io
import json
from typing import Any, Callable, Dict, List, Optional, Sequence

Renderer = Callable[[str, List[Dict[str, Any]], List[str], str], bytes]

BUILTIN_FORMATS = ("csv", "json")


def _project(records: Sequence[Dict[str, Any]], fields: List[str]) -> List[Dict[str, Any]]:
    if not fields:
        return [dict(r) for r in records]
    return [{name: r.get(name) for name in fields} for r in records]


def _columns(records: Sequence[Dict[str, Any]], fields: List[str]) -> List[str]:
    if fields:
        return list(fields)
    columns: List[str] = []
    for record in records:
        for key in record:
            if key not in columns:
                columns.append(key)
    return columns


def render_records(
    record_type: str,
    records: Sequence[Dict[str, Any]],
    selected_fields: Optional[List[str]] = None,
    fmt: str = "csv",
    renderer: Optional[Renderer] = None,
) -> bytes:
    """
    Render records restricted to selected_fields (all fields when empty).

    Raises:
        ValueError: unsupported format and no renderer supplied
    """
    fields = list(selected_fields or [])
    fmt = fmt.lower()
    rows = _project(records, fields)

    if fmt == "json":
        return json.dumps({"record_type": record_type, "records": rows}, default=str, ensure_ascii=False).encode("utf-8")

    if fmt == "csv":
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=_columns(rows, fields), extrasaction="ignore")
        writer.writeheader()
        for row in rows:
            writer.writerow({k: ("" if v is None else v) for k, v in row.items()})
        return buffer.getvalue().encode("utf-8")

    if renderer is None:
        raise ValueError(f"Unsupported export format: {fmt}")
    return renderer(record_type, rows, fields, fmt)
