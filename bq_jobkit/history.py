from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .config import get_history_path


def append_history(entry: Dict[str, Any], path: Optional[str] = None) -> None:
    path = path or get_history_path()
    entry = dict(entry)
    entry.setdefault("ts", datetime.now(timezone.utc).isoformat())
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")


def read_history(limit: int = 50, job_id: Optional[str] = None, path: Optional[str] = None) -> List[Dict[str, Any]]:
    """Return the newest ``limit`` entries, oldest first, optionally for one job."""
    path = path or get_history_path()
    entries: List[Dict[str, Any]] = []
    try:
        with open(path, "r", encoding="utf-8") as handle:
            for line in handle:
                line = line.strip()
                if not line:
                    continue
                entry = json.loads(line)
                if job_id is None or entry.get("job_id") == job_id:
                    entries.append(entry)
    except FileNotFoundError:
        return []
    return entries[-limit:] if limit else entries
