"""tracetree configuration management.

Handles:
- Execution mode (live Elasticsearch vs dev-fixtures JSONL)
- .env file loading with precedence: CLI > .env > env vars
- Go-style duration parsing for the poll window
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from tracetree.errors import ConfigError, InvalidModeError

DEFAULT_ES_URL = "http://localhost:9200"
DEFAULT_KIBANA_URL = "http://localhost:5601"
DEFAULT_APM_SERVER_URL = "http://localhost:8200"
DEFAULT_TRANSACTION_INDEX = "apm-*-transaction-*"
DEFAULT_SPAN_INDEX = "apm-*-span-*"


class Mode(str, Enum):
    """tracetree execution mode."""

    DEV_FIXTURES = "dev-fixtures"
    LIVE = "live"


@dataclass
class Targets:
    """Backend endpoints the run talks to."""

    es_urls: list[str] = field(default_factory=lambda: [DEFAULT_ES_URL])
    kibana_url: str = DEFAULT_KIBANA_URL
    apm_server_url: str = DEFAULT_APM_SERVER_URL
    transaction_index: str = DEFAULT_TRANSACTION_INDEX
    span_index: str = DEFAULT_SPAN_INDEX


@dataclass
class Config:
    """tracetree runtime configuration."""

    mode: Mode = Mode.LIVE
    targets: Targets = field(default_factory=Targets)
    poll_duration_seconds: float = 30.0
    poll_interval_seconds: float = 5.0
    flush_timeout_seconds: float = 10.0
    fixture_path: Path | None = None
    env_file_path: Path | None = None

    def is_live(self) -> bool:
        """Check if running in live mode."""
        return self.mode == Mode.LIVE

    def is_dev_fixtures(self) -> bool:
        """Check if running in dev-fixtures mode."""
        return self.mode == Mode.DEV_FIXTURES


_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str) -> float:
    """Parse a Go-style duration ("30s", "1m30s", "250ms") into seconds.

    A bare number is taken as seconds.

    Raises:
        ConfigError: If the value is not a valid duration.
    """
    text = value.strip()
    if not text:
        raise ConfigError("empty duration")

    try:
        seconds = float(text)
    except ValueError:
        pass
    else:
        if seconds < 0:
            raise ConfigError(f"negative duration: {value!r}")
        return seconds

    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text) or pos == 0:
        raise ConfigError(f"invalid duration: {value!r}")
    return total


def parse_env_file(env_file: Path) -> dict[str, str]:
    """Parse a .env file into a dictionary.

    Supports:
    - KEY=value
    - KEY="quoted value"
    - KEY='single quoted'
    - export KEY=value
    - # comments
    - Empty lines
    """
    result: dict[str, str] = {}

    if not env_file.exists():
        return result

    for line in env_file.read_text(encoding="utf-8").splitlines():
        line = line.strip()

        if not line or line.startswith("#"):
            continue

        if line.startswith("export "):
            line = line[7:]

        if "=" not in line:
            continue

        key, _, value = line.partition("=")
        key = key.strip()
        value = value.strip()

        if (value.startswith('"') and value.endswith('"')) or (
            value.startswith("'") and value.endswith("'")
        ):
            value = value[1:-1]

        result[key] = value

    return result


def _find_env_file(start: Path | None = None) -> Path | None:
    """Find .env file by walking up directory tree.

    Stops at git root, home directory, or filesystem root.
    Returns None if not found.
    """
    current = (start or Path.cwd()).resolve()

    try:
        home = Path.home()
    except RuntimeError:
        home = None

    for _ in range(20):  # Max depth
        env_file = current / ".env"
        if env_file.exists():
            return env_file

        if home and current == home:
            break
        if current == current.parent:
            break

        # Stop at git root (but check .env first)
        if (current / ".git").exists():
            break

        current = current.parent

    return None


def _split_urls(raw: str) -> list[str]:
    return raw.split()


def load_config(
    mode: str | None = None,
    env_file: str | Path | None = None,
    cli_overrides: dict[str, Any] | None = None,
) -> Config:
    """Load configuration with precedence: CLI > .env > env vars.

    Args:
        mode: Explicit mode override (live or dev-fixtures)
        env_file: Path to .env file to load; discovered from cwd if omitted
        cli_overrides: Values from command-line flags. Recognised keys:
            es_urls, kibana_url, apm_server_url, poll_duration,
            fixture_path. None values are ignored.

    Returns:
        Loaded Config instance

    Raises:
        ConfigError: If a value cannot be parsed.
    """
    cli_overrides = {k: v for k, v in (cli_overrides or {}).items() if v is not None}

    env_vars = dict(os.environ)

    env_file_path: Path | None
    if env_file:
        env_file_path = Path(env_file)
    else:
        env_file_path = _find_env_file()
    if env_file_path and env_file_path.exists():
        env_vars.update(parse_env_file(env_file_path))

    raw_mode = mode or env_vars.get("TRACETREE_MODE") or Mode.LIVE.value
    try:
        resolved_mode = Mode(raw_mode)
    except ValueError as e:
        raise InvalidModeError(f"unknown mode {raw_mode!r}") from e

    es_urls = cli_overrides.get("es_urls")
    if isinstance(es_urls, str):
        es_urls = _split_urls(es_urls)
    if not es_urls:
        es_urls = _split_urls(env_vars.get("TRACETREE_ES_URLS", "")) or [DEFAULT_ES_URL]

    targets = Targets(
        es_urls=es_urls,
        kibana_url=cli_overrides.get(
            "kibana_url", env_vars.get("TRACETREE_KIBANA_URL", DEFAULT_KIBANA_URL)
        ),
        apm_server_url=cli_overrides.get(
            "apm_server_url", env_vars.get("TRACETREE_APM_SERVER_URL", DEFAULT_APM_SERVER_URL)
        ),
        transaction_index=env_vars.get("TRACETREE_TRANSACTION_INDEX", DEFAULT_TRANSACTION_INDEX),
        span_index=env_vars.get("TRACETREE_SPAN_INDEX", DEFAULT_SPAN_INDEX),
    )

    poll_duration = parse_duration(
        cli_overrides.get("poll_duration", env_vars.get("TRACETREE_POLL_DURATION", "30s"))
    )
    poll_interval = parse_duration(env_vars.get("TRACETREE_POLL_INTERVAL_SECONDS", "5"))
    flush_timeout = parse_duration(env_vars.get("TRACETREE_FLUSH_TIMEOUT_SECONDS", "10"))

    fixture = cli_overrides.get("fixture_path", env_vars.get("TRACETREE_FIXTURE"))
    fixture_path = Path(fixture) if fixture else None
    if resolved_mode == Mode.DEV_FIXTURES and fixture_path is None:
        raise ConfigError("dev-fixtures mode needs --fixture or TRACETREE_FIXTURE")

    return Config(
        mode=resolved_mode,
        targets=targets,
        poll_duration_seconds=poll_duration,
        poll_interval_seconds=poll_interval,
        flush_timeout_seconds=flush_timeout,
        fixture_path=fixture_path,
        env_file_path=env_file_path,
    )
