"""Tail-reading of agent JSONL transcripts."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# Only the last 4KB is read to find the final entry.
TAIL_READ_BYTES = 4096


@dataclass
class JsonlEntry:
    """The type of the last entry in a transcript and the file's mtime."""
    last_type: Optional[str]
    modified_at: datetime


def read_last_jsonl_entry(path: str | Path) -> Optional[JsonlEntry]:
    """
    Return the last JSON object's "type" field and the file mtime.

    Walks backwards through the tail so a truncated first line in the chunk
    is skipped. Returns None for missing or empty files, or when no line in
    the tail parses as JSON.
    """
    path = Path(path)
    try:
        with open(path, "rb") as f:
            size = os.fstat(f.fileno()).st_size
            if size == 0:
                return None
            read_size = min(TAIL_READ_BYTES, size)
            f.seek(size - read_size)
            chunk = f.read(read_size)
            mtime = os.fstat(f.fileno()).st_mtime
    except OSError:
        return None

    modified_at = datetime.fromtimestamp(mtime, tz=timezone.utc)
    text = chunk.decode("utf-8", errors="ignore")
    for line in reversed(text.split("\n")):
        line = line.strip()
        if not line:
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            entry_type = parsed.get("type")
            return JsonlEntry(
                last_type=entry_type if isinstance(entry_type, str) else None,
                modified_at=modified_at,
            )
    return None
