import csv
import json
import logging
import re
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)


def sanitize_name(name, default="report"):
    # Keep alphanumeric, underscore, dot, parens, space, hyphen
    cleaned = re.sub(r'[^\w_.)( -]', '', str(name)).strip()
    return cleaned or default


def output_path(output_dir, *parts, fmt="csv"):
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    stem = "_".join(sanitize_name(p) for p in parts if p)
    return Path(output_dir) / f"{stem}_{stamp}.{fmt}"


def field_names(rows):
    """Union of row keys in first-seen order."""
    fields = {}
    for row in rows:
        for key in row:
            fields.setdefault(key, None)
    return list(fields)


def sort_rows(rows, *keys):
    return sorted(rows, key=lambda r: tuple(str(r.get(k, "")) for k in keys))


def write_rows(rows, path, fields=None, fmt="csv"):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if fmt == "json":
        with open(path, "w") as f:
            json.dump(rows, f, indent=4, default=str)
    else:
        with open(path, "w", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=fields or field_names(rows), extrasaction="ignore")
            writer.writeheader()
            for row in rows:
                writer.writerow({k: _cell(v) for k, v in row.items()})
    logger.info(f"✅ {len(rows)} row(s) saved to {path}")
    return path


def _cell(value):
    if isinstance(value, (list, tuple, set)):
        return ";".join(str(v) for v in value)
    if value is None:
        return ""
    return value
