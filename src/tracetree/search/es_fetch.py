"""Elasticsearch record source for APM traces.

Fetches every transaction and span document of a trace in one
multi-search and decodes them into records. A truncated result is an
error: the caller must always get the complete set it asked for.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol, Sequence

from tracetree.config import DEFAULT_ES_URL, DEFAULT_SPAN_INDEX, DEFAULT_TRANSACTION_INDEX
from tracetree.errors import SearchQueryError, TooManyHitsError
from tracetree.search.decode import decode_sources
from tracetree.trace.record_model import Record, RecordId

# Note: elasticsearch import is deferred to runtime to avoid issues in offline mode

MAX_HITS = 10000


class RecordSource(Protocol):
    """Anything that returns the current record set for a trace."""

    def fetch(self, trace_id: str) -> dict[RecordId, Record]:
        ...


@dataclass(frozen=True)
class TraceQuery:
    """Configuration for a trace multi-search."""

    trace_id: str
    indices: Sequence[str] = field(
        default_factory=lambda: (DEFAULT_TRANSACTION_INDEX, DEFAULT_SPAN_INDEX)
    )
    size: int = MAX_HITS


def build_trace_searches(query: TraceQuery) -> list[dict[str, Any]]:
    """Build the msearch header/body pairs for a trace.

    One search per index pattern, each a ``term`` query on ``trace.id``.
    """
    searches: list[dict[str, Any]] = []
    for index in query.indices:
        searches.append({"index": index})
        searches.append(
            {
                "size": query.size,
                "track_total_hits": True,
                "query": {"term": {"trace.id": query.trace_id}},
            }
        )
    return searches


def _total_hits(hits: dict[str, Any]) -> int:
    total = hits.get("total", 0)
    if isinstance(total, dict):
        return int(total.get("value", 0))
    return int(total)


def collect_sources(msearch_response: Any) -> list[dict[str, Any]]:
    """Pull ``_source`` documents out of an msearch response.

    Raises:
        SearchQueryError: If any sub-search failed.
        TooManyHitsError: If any sub-search returned fewer hits than matched.
    """
    sources: list[dict[str, Any]] = []
    for response in msearch_response["responses"]:
        error = response.get("error")
        if error:
            reason = error.get("reason") if isinstance(error, dict) else str(error)
            raise SearchQueryError(reason or "search failed")

        hits = response.get("hits", {})
        returned = hits.get("hits", [])
        total = _total_hits(hits)
        if total > len(returned):
            # TODO: page with search_after/point-in-time instead of refusing
            raise TooManyHitsError(f"{total} matched, {len(returned)} returned")

        sources.extend(hit["_source"] for hit in returned)
    return sources


class ElasticsearchRecordSource:
    """Record source backed by the APM indices in Elasticsearch.

    The underlying client is created on first use and reused for every
    fetch cycle of a run; fetches are strictly sequential.
    """

    def __init__(
        self,
        urls: Optional[Sequence[str]] = None,
        indices: Optional[Sequence[str]] = None,
        client: Any = None,
    ):
        """Initialize the record source.

        Args:
            urls: Elasticsearch node URLs
            indices: Index patterns to search (transactions, spans)
            client: Preconfigured client; built from ``urls`` when omitted
        """
        self._urls = list(urls or [DEFAULT_ES_URL])
        self._indices = tuple(indices or (DEFAULT_TRANSACTION_INDEX, DEFAULT_SPAN_INDEX))
        self._client: Any = client

    def _get_client(self) -> Any:
        """Get or create the Elasticsearch client."""
        if self._client is None:
            from elasticsearch import Elasticsearch

            self._client = Elasticsearch(self._urls)
        return self._client

    def fetch(self, trace_id: str) -> dict[RecordId, Record]:
        """Return every record currently stored for ``trace_id``.

        Raises:
            SearchQueryError: On transport/API failure or truncated results
            RecordDecodeError: If any document fails schema validation
        """
        from elasticsearch import ApiError, TransportError

        client = self._get_client()
        searches = build_trace_searches(TraceQuery(trace_id=trace_id, indices=self._indices))
        try:
            response = client.msearch(searches=searches)
        except (ApiError, TransportError) as e:
            raise SearchQueryError(f"querying elasticsearch: {e}") from e

        return decode_sources(collect_sources(response))

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
