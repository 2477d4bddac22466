"""Decode APM documents into records.

Each ``_source`` is validated against ``schemas/apm.source.schema.json``
before it is mapped. A single bad document rejects the whole batch: a
partially decoded record set could make an incomplete trace look
complete.
"""
from __future__ import annotations

import json
from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable

import jsonschema

from tracetree.errors import RecordDecodeError
from tracetree.trace.record_model import Record, RecordId, RecordKind

SCHEMA_NAME = "apm.source.schema.json"


def _get_schema_dir() -> Path:
    """Get the directory containing schemas."""
    return Path(__file__).parent.parent / "schemas"


@lru_cache(maxsize=None)
def _validator() -> jsonschema.Draft202012Validator:
    schema_path = _get_schema_dir() / SCHEMA_NAME
    schema = json.loads(schema_path.read_text(encoding="utf-8"))
    return jsonschema.Draft202012Validator(schema)


def _format_path(path: Iterable[Any]) -> str:
    """Format a jsonschema path as a dotted string."""
    parts = ["$"]
    for p in path:
        if isinstance(p, int):
            parts.append(f"[{p}]")
        else:
            parts.append(f".{p}")
    return "".join(parts)


def validate_source(source: Any) -> list[str]:
    """Return schema violations for one ``_source`` document, empty if valid."""
    errors = sorted(_validator().iter_errors(source), key=lambda e: list(e.absolute_path))
    return [f"{_format_path(e.absolute_path)} - {e.message}" for e in errors]


def _service_name(source: dict[str, Any]) -> str:
    service = source.get("service") or source.get("context", {}).get("service") or {}
    return service.get("name", "")


def decode_source(source: Any) -> tuple[RecordId, Record]:
    """Map one APM ``_source`` document to ``(identity, record)``.

    Raises:
        RecordDecodeError: If the document does not match the schema.
    """
    problems = validate_source(source)
    if problems:
        raise RecordDecodeError("; ".join(problems))

    span = source.get("span")
    transaction = source.get("transaction")
    if span is not None:
        span_id = span.get("id") or span["hex_id"]
        record = Record(
            parent_span_id=source.get("parent", {}).get("id", ""),
            name=span["name"],
            service_name=_service_name(source),
            kind=RecordKind.SPAN,
            type=span.get("type"),
        )
    else:
        span_id = transaction["id"]
        record = Record(
            parent_span_id=source.get("parent", {}).get("id", ""),
            name=transaction["name"],
            service_name=_service_name(source),
            kind=RecordKind.TRANSACTION,
            result=transaction.get("result") or None,
            type=transaction.get("type"),
        )

    return RecordId(trace_id=source["trace"]["id"], span_id=span_id), record


def decode_sources(sources: Iterable[Any]) -> dict[RecordId, Record]:
    """Decode a batch of documents. Duplicate identities: last seen wins."""
    records: dict[RecordId, Record] = {}
    for n, source in enumerate(sources):
        try:
            record_id, record = decode_source(source)
        except RecordDecodeError as e:
            raise RecordDecodeError(f"document {n}: {e}") from e
        records[record_id] = record
    return records
