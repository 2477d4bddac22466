"""tracetree error codes and exception types.

Every error surfaced to the operator carries:
- Code: TT-EXXX format
- Message: Human-readable description
- Next step: Actionable command or instruction
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional
import sys


class TraceTreeError(Exception):
    """Base class for tracetree failures."""


class ConfigError(TraceTreeError):
    """Invalid configuration value."""


class InvalidModeError(ConfigError):
    """Unknown execution mode."""


class SearchQueryError(TraceTreeError):
    """The backend could not produce an authoritative record set."""


class TooManyHitsError(SearchQueryError):
    """The backend truncated the result set."""


class RecordDecodeError(TraceTreeError):
    """A stored document does not have the expected shape."""


class TriggerError(TraceTreeError):
    """The triggering HTTP request failed."""


class LinkGenerationError(TraceTreeError):
    """A deep link could not be produced for a root transaction."""


class ErrorCode(Enum):
    """tracetree error codes."""

    # Configuration errors (E001-E099)
    E007 = "E007"  # Invalid configuration value
    E008 = "E008"  # Invalid mode specified

    # Runtime errors (E100-E199)
    E100 = "E100"  # Elasticsearch query failed
    E101 = "E101"  # Too many hits
    E102 = "E102"  # Trigger request failed
    E103 = "E103"  # Link generation failed
    E105 = "E105"  # Flush timed out

    # Validation errors (E200-E299)
    E203 = "E203"  # Record data invalid

    # File/IO errors (E300-E399)
    E301 = "E301"  # Fixture file not found


@dataclass
class TraceTreeErrorReport:
    """Structured error with code, message, and next step."""

    code: ErrorCode
    message: str
    next_step: str
    details: Optional[str] = None

    def __str__(self) -> str:
        lines = [
            f"TT-{self.code.value}: {self.message}",
        ]
        if self.details:
            lines.append(f"  Details: {self.details}")
        lines.append(f"  Next step: {self.next_step}")
        return "\n".join(lines)

    def print(self, file=None) -> None:
        """Print the error to stderr (or specified file)."""
        print(str(self), file=file or sys.stderr)


# (message_template, next_step)
ERROR_TEMPLATES: dict[ErrorCode, tuple[str, str]] = {
    ErrorCode.E007: (
        "Invalid configuration value: {details}",
        "Check TRACETREE_* variables in .env or the command-line flags"
    ),
    ErrorCode.E008: (
        "Invalid mode: {details}",
        "Use --mode live or --mode dev-fixtures"
    ),
    ErrorCode.E100: (
        "Elasticsearch query failed: {details}",
        "Check --es URLs and that the APM indices exist"
    ),
    ErrorCode.E101: (
        "Too many hits for trace: {details}",
        "The trace is larger than one search page; narrow the query"
    ),
    ErrorCode.E102: (
        "Trigger request failed: {details}",
        "Check the target URL is reachable"
    ),
    ErrorCode.E103: (
        "Could not create Kibana link: {details}",
        "Check --kibana URL or pass --no-links"
    ),
    ErrorCode.E105: (
        "Operation timed out: {details}",
        "Check --apm-server is reachable; the trace may arrive late"
    ),
    ErrorCode.E203: (
        "Record data is invalid: {details}",
        "Check the documents against schemas/apm.source.schema.json"
    ),
    ErrorCode.E301: (
        "Fixture file not found: {details}",
        "Check the --fixture path"
    ),
}

# Exception type -> error code, most specific first
EXCEPTION_CODES: list[tuple[type[BaseException], ErrorCode]] = [
    (TooManyHitsError, ErrorCode.E101),
    (SearchQueryError, ErrorCode.E100),
    (RecordDecodeError, ErrorCode.E203),
    (TriggerError, ErrorCode.E102),
    (LinkGenerationError, ErrorCode.E103),
    (InvalidModeError, ErrorCode.E008),
    (ConfigError, ErrorCode.E007),
    (FileNotFoundError, ErrorCode.E301),
]


def make_error(code: ErrorCode, details: Optional[str] = None) -> TraceTreeErrorReport:
    """Create an error report from a code with optional details.

    Args:
        code: The error code
        details: Optional details to include in the message

    Returns:
        TraceTreeErrorReport instance ready to print
    """
    template = ERROR_TEMPLATES.get(code, ("Unknown error", "Re-run with --verbose"))
    message_template, next_step = template

    if details and "{details}" in message_template:
        message = message_template.format(details=details)
    elif details:
        message = f"{message_template}: {details}"
    else:
        message = message_template.replace(": {details}", "")

    return TraceTreeErrorReport(
        code=code,
        message=message,
        next_step=next_step,
        details=details if "{details}" not in message_template else None,
    )


def code_for_exception(exc: BaseException) -> Optional[ErrorCode]:
    """Look up the error code registered for an exception type."""
    for exc_type, code in EXCEPTION_CODES:
        if isinstance(exc, exc_type):
            return code
    return None


def warn(code: ErrorCode, details: Optional[str] = None) -> None:
    """Print a non-fatal error report to stderr."""
    err = make_error(code, details)
    print(f"⚠️  {err}", file=sys.stderr)


# Verbose mode flag (set by CLI)
_verbose_mode: bool = False


def set_verbose(verbose: bool) -> None:
    """Set verbose mode for error output."""
    global _verbose_mode
    _verbose_mode = verbose


def is_verbose() -> bool:
    """Check if verbose mode is enabled."""
    return _verbose_mode


def handle_exception(exc: Exception, code: ErrorCode, details: Optional[str] = None) -> None:
    """Print an exception with proper error formatting.

    In verbose mode, also prints the full traceback.
    """
    import traceback

    err = make_error(code, details or str(exc))
    err.print()

    if _verbose_mode:
        print("\n--- Full Traceback ---", file=sys.stderr)
        traceback.print_exc()
