from __future__ import annotations

import argparse
import sys
from typing import Any, Optional, Sequence

import httpx
from rich.console import Console

from tracetree.config import Config, Mode, load_config
from tracetree.diagrams.tree_render import TreeRenderer
from tracetree.entrypoints.http_trigger import HttpTrigger
from tracetree.errors import (
    ConfigError,
    ErrorCode,
    TraceTreeError,
    code_for_exception,
    handle_exception,
    is_verbose,
    set_verbose,
)
from tracetree.fixtures import FixtureRecordSource
from tracetree.links.kibana import KibanaLinkGenerator
from tracetree.poll.controller import PollingController
from tracetree.search.es_fetch import ElasticsearchRecordSource, RecordSource


def _make_source(config: Config) -> RecordSource:
    if config.is_dev_fixtures():
        if config.fixture_path is None:
            raise ConfigError("dev-fixtures mode needs --fixture or TRACETREE_FIXTURE")
        return FixtureRecordSource(config.fixture_path)
    return ElasticsearchRecordSource(
        urls=config.targets.es_urls,
        indices=(config.targets.transaction_index, config.targets.span_index),
    )


def _check_url(url: str) -> None:
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as e:
        raise ConfigError(f"failed to parse URL {url!r}: {e}") from e
    if parsed.scheme not in ("http", "https") or not parsed.host:
        raise ConfigError(f"failed to parse URL {url!r}: expected http(s)://host/...")


def _close(*resources: Any) -> None:
    for resource in resources:
        close = getattr(resource, "close", None)
        if close is not None:
            close()


def _cmd_run(args: argparse.Namespace) -> int:
    config = load_config(
        mode=args.mode,
        env_file=args.env_file,
        cli_overrides={
            "es_urls": args.es,
            "kibana_url": args.kibana,
            "apm_server_url": args.apm_server,
            "poll_duration": args.duration,
            "fixture_path": args.fixture,
        },
    )
    if args.url and config.is_dev_fixtures():
        raise ConfigError("dev-fixtures mode can only look up an existing trace (--trace)")

    console = Console(no_color=args.no_color, highlight=False)
    source = _make_source(config)
    link_generator: Optional[KibanaLinkGenerator] = None
    if not args.no_links and config.is_live():
        _check_url(config.targets.kibana_url)
        link_generator = KibanaLinkGenerator(config.targets.kibana_url)

    controller = PollingController(
        source=source,
        renderer=TreeRenderer(console),
        link_generator=link_generator,
        poll_interval_seconds=config.poll_interval_seconds,
    )

    try:
        if args.url:
            _check_url(args.url)
            trigger = HttpTrigger(
                apm_server_url=config.targets.apm_server_url,
                flush_timeout_seconds=config.flush_timeout_seconds,
            )
            try:
                trace_id = trigger.invoke(args.url)
            finally:
                trigger.close()
            print(f"polling for new events for {config.poll_duration_seconds:g}s...\n")
            controller.run(
                trace_id,
                recent_request=True,
                poll_duration_seconds=config.poll_duration_seconds,
            )
        else:
            controller.run(args.trace, recent_request=False)
    finally:
        _close(source, link_generator)
    return 0


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="tracetree",
        usage="%(prog)s [OPTIONS] [URL]",
        description=(
            "Print the call tree of an APM trace stored in Elasticsearch. "
            "Give a URL to request it and watch the new trace arrive, or "
            "--trace to look up an existing one."
        ),
    )
    p.add_argument("url", nargs="?", metavar="URL", help="URL to fetch inside a new trace")
    p.add_argument(
        "--trace",
        default=None,
        help="Trace ID to query (must not also specify URL to fetch)",
    )
    p.add_argument(
        "--es",
        default=None,
        help="Whitespace-delimited list of Elasticsearch server URLs (default: http://localhost:9200)",
    )
    p.add_argument("--kibana", default=None, help="Base URL for Kibana (default: http://localhost:5601)")
    p.add_argument(
        "--apm-server",
        dest="apm_server",
        default=None,
        help="OTLP endpoint used to report the triggering request (default: http://localhost:8200)",
    )
    p.add_argument(
        "-d",
        "--duration",
        default=None,
        help="Amount of time to wait for events, e.g. 30s, 1m30s (default: 30s)",
    )
    p.add_argument(
        "--mode",
        choices=[m.value for m in Mode],
        default=None,
        help="live queries Elasticsearch; dev-fixtures reads --fixture (default: live)",
    )
    p.add_argument("--fixture", default=None, help="JSONL file of APM documents (dev-fixtures mode)")
    p.add_argument("--env-file", dest="env_file", default=None, help="Path to .env file")
    p.add_argument("--no-links", dest="no_links", action="store_true", help="Skip Kibana links")
    p.add_argument("--no-color", dest="no_color", action="store_true", help="Disable coloured output")
    p.add_argument("--verbose", action="store_true", help="Show full tracebacks on errors")
    p.set_defaults(func=_cmd_run)
    return p


def main(argv: Optional[Sequence[str]] = None) -> None:
    p = _build_parser()
    args = p.parse_args(argv)

    set_verbose(args.verbose)

    if bool(args.url) == bool(args.trace):
        p.print_help(sys.stderr)
        raise SystemExit(2)

    try:
        rc = args.func(args)
        raise SystemExit(rc)
    except SystemExit:
        raise
    except KeyboardInterrupt:
        print("\n⚠️  Interrupted by user", file=sys.stderr)
        raise SystemExit(130)
    except (TraceTreeError, FileNotFoundError) as e:
        handle_exception(e, code_for_exception(e) or ErrorCode.E007)
        raise SystemExit(1)
    except Exception as e:
        if is_verbose():
            import traceback
            traceback.print_exc()
        else:
            print(f"Error: {e}", file=sys.stderr)
            print("Run with --verbose for full traceback", file=sys.stderr)
        raise SystemExit(1)
