"""Kibana deep links for root transactions.

Builds the APM app path for a transaction and turns it into a short
``/goto/<id>`` URL through Kibana's shorten-URL API.
"""
from __future__ import annotations

from typing import Any, Optional
from urllib.parse import quote

import httpx

from tracetree.config import DEFAULT_KIBANA_URL
from tracetree.errors import LinkGenerationError
from tracetree.trace.record_model import Record, RecordId


def _path_escape(value: str) -> str:
    # Path-segment escaping: "/", ";", "," and "?" are encoded.
    return quote(value, safe="$&+:=@")


def build_transaction_path(record_id: RecordId, record: Record) -> str:
    """Build the Kibana APM app path for one transaction.

    Kibana's hash router cannot take percent-escapes, so every ``%`` is
    rewritten to ``~``.
    """
    kuery = f"trace.id:{record_id.trace_id} and transaction.id:{record_id.span_id}"
    path = "/app/apm#/{service}/transactions/{type}/{name}?_g=()&kuery={kuery}".format(
        service=record.service_name,
        type=record.type or "",
        name=_path_escape(record.name),
        kuery=_path_escape(kuery),
    )
    return path.replace("%", "~")


class KibanaLinkGenerator:
    """Produces short Kibana URLs for root transactions."""

    def __init__(
        self,
        kibana_url: str = DEFAULT_KIBANA_URL,
        client: Optional[httpx.Client] = None,
        timeout: float = 10.0,
    ):
        self._kibana_url = kibana_url.rstrip("/")
        self._client = client
        self._timeout = timeout

    def _get_client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self._timeout)
        return self._client

    def link_for(self, record_id: RecordId, record: Record) -> str:
        """Return a ``<kibana>/goto/<id>`` URL for the transaction.

        Raises:
            LinkGenerationError: If Kibana cannot be reached or refuses.
        """
        path = build_transaction_path(record_id, record)
        try:
            resp = self._get_client().post(
                f"{self._kibana_url}/api/shorten_url",
                json={"url": path},
                headers={"kbn-xsrf": "true"},
            )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise LinkGenerationError(f"shortening URL: {e}") from e

        if resp.status_code != httpx.codes.OK:
            raise LinkGenerationError(
                f"error shortening URL (HTTP {resp.status_code}): {resp.text.strip()}"
            )

        try:
            body: Any = resp.json()
            url_id = body["urlId"]
        except (ValueError, KeyError, TypeError) as e:
            raise LinkGenerationError(f"unexpected shorten_url response: {resp.text!r}") from e
        return f"{self._kibana_url}/goto/{url_id}"

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
