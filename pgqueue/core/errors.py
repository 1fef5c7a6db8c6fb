"""Rust-style error display for pgqueue startup/validation errors."""

from __future__ import annotations

import linecache
import os
import sys
import traceback
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Absolute path to the pgqueue package directory.
# Used by _find_user_frame to tell library frames from user code.
_PGQUEUE_PKG_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


class ErrorCode(str, Enum):
    """Error codes for startup/validation errors.

    Organized by category:
    - E100-E199: Job submission errors
    - E200-E299: Config/store errors
    - E300-E399: Function registry errors
    - E400-E499: Poll/ack authentication errors
    - E500-E599: State machine errors
    """

    # Job submission (E100-E199)
    JOB_INVALID_TARGET = 'E101'
    JOB_MISSING_OWNER = 'E102'
    JOB_INVALID_SIGNING = 'E103'
    JOB_INVALID_AUTH = 'E104'
    JOB_INVALID_PAYLOAD = 'E105'

    # Config/store (E200-E299)
    STORE_INVALID_URL = 'E200'
    CONFIG_INVALID_SWEEP = 'E201'
    CONFIG_INVALID_DISPATCH = 'E202'
    CONFIG_INVALID_POLL = 'E203'
    CLI_INVALID_ARGS = 'E204'
    APP_INVALID_LOCATOR = 'E205'

    # Function registry (E300-E399)
    FUNCTION_DUPLICATE_NAME = 'E300'
    FUNCTION_INVALID_NAME = 'E301'

    # Poll/ack (E400-E499)
    POLL_STALE_TIMESTAMP = 'E400'
    POLL_BAD_SIGNATURE = 'E401'
    POLL_MISSING_CALLER = 'E402'

    # State machine (E500-E599)
    INVALID_TRANSITION = 'E500'


class _Colors:
    """ANSI escape codes for terminal colors."""

    RESET = '\033[0m'
    BOLD = '\033[1m'
    RED = '\033[91m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    DIM = '\033[2m'


class _NoColors:
    """No-op color codes for non-TTY output."""

    RESET = ''
    BOLD = ''
    RED = ''
    BLUE = ''
    CYAN = ''
    GREEN = ''
    DIM = ''


def _env_flag(name: str) -> bool:
    return os.environ.get(name, '').lower() in ('1', 'true', 'yes')


def _should_use_colors() -> bool:
    """Determine if colors should be used in output."""
    if _env_flag('PGQUEUE_FORCE_COLOR'):
        return True

    # NO_COLOR standard (https://no-color.org/)
    if os.environ.get('NO_COLOR') is not None:
        return False

    return hasattr(sys.stderr, 'isatty') and sys.stderr.isatty()


@dataclass
class SourceLocation:
    """Source code location information."""

    file: str
    line: int

    @classmethod
    def from_frame(cls, frame: Any) -> SourceLocation:
        return cls(file=frame.f_code.co_filename, line=frame.f_lineno)

    def get_source_line(self) -> str | None:
        line = linecache.getline(self.file, self.line)
        return line.rstrip('\n') if line else None

    def format_short(self) -> str:
        return f'{self.file}:{self.line}'


@dataclass
class PgQueueError(Exception):
    """Base exception for pgqueue startup, validation and boundary errors.

    Rendered in Rust style:
    - error code and message
    - source location with code snippet
    - notes and help text
    """

    message: str
    code: ErrorCode | None = None
    location: SourceLocation | None = None
    notes: list[str] = field(default_factory=lambda: [])
    help_text: str | None = None

    def __post_init__(self) -> None:
        super().__init__(self.message)

        if self.location is None:
            user_frame = _find_user_frame()
            if user_frame is not None:
                self.location = SourceLocation.from_frame(user_frame)

    def with_note(self, note: str) -> PgQueueError:
        """Add a note to the error (fluent API)."""
        self.notes.append(note)
        return self

    def with_help(self, help_text: str) -> PgQueueError:
        """Set help text (fluent API)."""
        self.help_text = help_text
        return self

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        lines: list[str] = ['']

        code_part = f'[{self.code.value}]' if self.code else ''
        lines.append(f'{c.BOLD}{c.RED}error{code_part}:{c.RESET} {self.message}')

        if self.location:
            lines.append(
                f'  {c.BLUE}-->{c.RESET} {c.CYAN}{self.location.format_short()}{c.RESET}'
            )
            source_line = self.location.get_source_line()
            if source_line:
                line_num = str(self.location.line)
                padding = ' ' * len(line_num)
                stripped = source_line.lstrip()
                indent = len(source_line) - len(stripped)
                lines.append(f'   {c.BLUE}{padding}|{c.RESET}')
                lines.append(f'   {c.BLUE}{line_num}|{c.RESET} {source_line}')
                lines.append(
                    f'   {c.BLUE}{padding}|{c.RESET} '
                    f'{c.RED}{" " * indent}{"^" * len(stripped)}{c.RESET}'
                )

        for note in self.notes:
            note_lines = note.split('\n')
            lines.append(
                f'   {c.BLUE}={c.RESET} {c.BOLD}{c.BLUE}note{c.RESET}: {note_lines[0]}'
            )
            for note_line in note_lines[1:]:
                lines.append(f'          {note_line}')

        if self.help_text:
            lines.append('')
            lines.append(f'   {c.BLUE}={c.RESET} {c.BOLD}{c.GREEN}help{c.RESET}:')
            for help_line in self.help_text.split('\n'):
                lines.append(f'        {help_line}')

        return '\n'.join(lines)

    def __str__(self) -> str:
        """Plain text (no ANSI colors), safe for logs and database columns."""
        return self.format_rust_style(use_colors=False)


_original_excepthook = sys.excepthook


def _pgqueue_excepthook(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: Any,
) -> None:
    """Custom exception hook for PgQueueError exceptions."""
    if _env_flag('PGQUEUE_PLAIN_ERRORS') or not isinstance(exc_value, PgQueueError):
        _original_excepthook(exc_type, exc_value, exc_tb)
        return

    print(exc_value.format_rust_style(), file=sys.stderr)
    if _env_flag('PGQUEUE_VERBOSE'):
        c = _Colors if _should_use_colors() else _NoColors
        print(file=sys.stderr)
        print(f'{c.DIM}Full traceback (PGQUEUE_VERBOSE=1):{c.RESET}', file=sys.stderr)
        traceback.print_exception(exc_type, exc_value, exc_tb, file=sys.stderr)


def install_error_handler() -> None:
    """Install the custom exception hook for Rust-style error display."""
    sys.excepthook = _pgqueue_excepthook


def uninstall_error_handler() -> None:
    """Restore the original exception hook."""
    sys.excepthook = _original_excepthook


# =============================================================================
# Specific Error Classes
# =============================================================================


@dataclass
class ConfigurationError(PgQueueError):
    """Raised when app/store configuration is invalid."""

    pass


@dataclass
class JobValidationError(PgQueueError):
    """Raised synchronously by job submission when the job cannot be inserted."""

    pass


@dataclass
class AuthenticationError(PgQueueError):
    """Raised by poll when the timestamp is stale or the HMAC does not match.

    No job state is changed; the caller must retry with a fresh request.
    """

    pass


@dataclass
class InvalidTransitionError(PgQueueError):
    """Raised when a status change is not in the transition table."""

    pass


@dataclass
class RegistryError(PgQueueError):
    """Raised when function registry operation fails."""

    pass


# =============================================================================
# Phase-Gated Error Collection
# =============================================================================


class ValidationReport:
    """Collects multiple PgQueueError instances within a validation phase."""

    def __init__(self, phase_name: str) -> None:
        self.phase_name: str = phase_name
        self.errors: list[PgQueueError] = []

    def add(self, error: PgQueueError) -> None:
        self.errors.append(error)

    def has_errors(self) -> bool:
        return len(self.errors) > 0

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        if use_colors is None:
            use_colors = _should_use_colors()

        c = _Colors if use_colors else _NoColors
        parts = [error.format_rust_style(use_colors=use_colors) for error in self.errors]
        parts.append(
            f'\n{c.BOLD}{c.RED}error{c.RESET}: aborting due to '
            f'{len(self.errors)} previous errors'
        )
        return '\n'.join(parts)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


@dataclass
class MultipleValidationErrors(PgQueueError):
    """Wraps a ValidationReport containing 2+ errors."""

    report: ValidationReport = field(default_factory=lambda: ValidationReport(''))

    def __post_init__(self) -> None:
        if not self.message:
            self.message = f'aborting due to {len(self.report.errors)} previous errors'
        # Location is per-error in the report
        Exception.__init__(self, self.message)

    def format_rust_style(self, use_colors: bool | None = None) -> str:
        return self.report.format_rust_style(use_colors=use_colors)

    def __str__(self) -> str:
        return self.format_rust_style(use_colors=False)


def raise_collected(report: ValidationReport) -> None:
    """Raise collected errors.

    - 0 errors: no-op
    - 1 error: raises the original error
    - 2+ errors: raises MultipleValidationErrors wrapping the report
    """
    count = len(report.errors)
    if count == 0:
        return
    if count == 1:
        raise report.errors[0]
    raise MultipleValidationErrors(
        message=f'aborting due to {count} previous errors',
        report=report,
    )


def _find_user_frame() -> Any | None:
    """Find the first frame outside of pgqueue internals."""
    frame = sys._getframe(1)
    while frame is not None:
        filename = frame.f_code.co_filename
        if (
            not filename.startswith('<')
            and not filename.startswith(_PGQUEUE_PKG_DIR)
            and '/site-packages/' not in filename
        ):
            return frame
        frame = frame.f_back
    return None
