"""tracetree test configuration and fixtures."""
from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Add src to path for imports
SRC_DIR = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(SRC_DIR))

from tracetree.trace.record_model import Record, RecordId, RecordKind  # noqa: E402

CHECKOUT_TRACE_ID = "0af7651916cd43dd8448eb211c80319c"
ORPHAN_TRACE_ID = "5b8aa5a2d2c872e8321cf37308d69df2"


def span(trace_id: str, span_id: str, parent: str, name: str, service: str = "svc-a") -> tuple[RecordId, Record]:
    """Build a span record keyed by its identity."""
    return RecordId(trace_id, span_id), Record(
        parent_span_id=parent, name=name, service_name=service, kind=RecordKind.SPAN
    )


def transaction(
    trace_id: str,
    span_id: str,
    parent: str,
    name: str,
    service: str = "svc-a",
    result: str | None = None,
) -> tuple[RecordId, Record]:
    """Build a transaction record keyed by its identity."""
    return RecordId(trace_id, span_id), Record(
        parent_span_id=parent,
        name=name,
        service_name=service,
        kind=RecordKind.TRANSACTION,
        result=result,
        type="request",
    )


@pytest.fixture
def fixtures_dir() -> Path:
    """Return the fixtures directory path."""
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def src_dir() -> Path:
    """Return the src directory path."""
    return SRC_DIR


@pytest.fixture
def checkout_fixture_path(fixtures_dir: Path) -> Path:
    """A complete two-service trace plus one unrelated trace."""
    return fixtures_dir / "traces" / "checkout_trace_001.jsonl"


@pytest.fixture
def orphan_fixture_path(fixtures_dir: Path) -> Path:
    """A trace whose only span points at a missing parent."""
    return fixtures_dir / "traces" / "orphan_trace_001.jsonl"


@pytest.fixture
def invalid_fixture_path(fixtures_dir: Path) -> Path:
    """A trace containing a document that is neither span nor transaction."""
    return fixtures_dir / "traces" / "invalid_trace_001.jsonl"
