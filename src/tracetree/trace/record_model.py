from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RecordKind(str, Enum):
    """Kind of APM document a record was decoded from."""

    SPAN = "span"
    TRANSACTION = "transaction"


@dataclass(frozen=True)
class RecordId:
    """Identity of a node within a trace.

    Spans and transactions share the same identity space. The synthetic
    root of a trace is ``RecordId(trace_id, "")``.
    """

    trace_id: str
    span_id: str


@dataclass(frozen=True)
class Record:
    """A span or transaction as stored by the APM backend."""

    parent_span_id: str  # "" attaches to the synthetic root
    name: str
    service_name: str
    kind: RecordKind = RecordKind.SPAN

    # Transactions only
    result: Optional[str] = None

    # e.g. request, db.postgresql.query
    type: Optional[str] = None

    @property
    def is_transaction(self) -> bool:
        return self.kind == RecordKind.TRANSACTION

    def label(self) -> str:
        """Rendering text for the tree node."""
        text = f"{self.name} ({self.service_name})"
        if self.result:
            text += f" => {self.result}"
        return text


def root_id(trace_id: str) -> RecordId:
    """Identity of the synthetic root node for a trace."""
    return RecordId(trace_id=trace_id, span_id="")


def parent_id(record_id: RecordId, record: Record) -> RecordId:
    """Identity of a record's parent. Lookup never leaves the record's trace."""
    return RecordId(trace_id=record_id.trace_id, span_id=record.parent_span_id)
