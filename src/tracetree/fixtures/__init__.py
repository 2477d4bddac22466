"""Fixture record source for dev-fixtures mode.

Reads APM ``_source`` documents from a JSONL file instead of querying
Elasticsearch, so traces can be rendered and tested offline.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from tracetree.errors import RecordDecodeError
from tracetree.search.decode import decode_sources
from tracetree.trace.record_model import Record, RecordId


def load_fixture_sources(path: Path) -> list[dict[str, Any]]:
    """Load raw documents from a JSONL fixture; blank lines are skipped.

    Raises:
        FileNotFoundError: If the fixture does not exist
        RecordDecodeError: If a line is not valid JSON
    """
    if not path.exists():
        raise FileNotFoundError(str(path))

    sources: list[dict[str, Any]] = []
    for line_number, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            sources.append(json.loads(line))
        except json.JSONDecodeError as e:
            raise RecordDecodeError(f"{path}:{line_number}: invalid JSON: {e.msg}") from e
    return sources


class FixtureRecordSource:
    """Record source that answers from a JSONL fixture file.

    The file is re-read on every fetch so a fixture being appended to
    behaves like a backend receiving late writes.
    """

    def __init__(self, path: Path):
        self._path = Path(path)

    def fetch(self, trace_id: str) -> dict[RecordId, Record]:
        records = decode_sources(load_fixture_sources(self._path))
        return {rid: rec for rid, rec in records.items() if rid.trace_id == trace_id}
