"""Console logging for the board services and entry points.

Provides consistent logging behavior across the CLI, MCP server and gateway:
- Stderr for every message (stdout stays clean for JSON output)
- Debug logging only when verbose
- Colored output when the terminal supports it

Loggers are constructed by entry points and passed to the services that
need them; there is no module-level instance.
"""

import sys
import traceback
from typing import Any, TextIO


class Logger:
    """Stderr logger shared by the board services.

    Attributes:
        verbose: If True, DEBUG messages are printed
        use_colors: If True, use ANSI color codes
        quiet: If True, INFO messages are suppressed (warnings and errors still print)
    """

    def __init__(
        self,
        verbose: bool = False,
        use_colors: bool = True,
        quiet: bool = False,
        stream: TextIO | None = None,
    ) -> None:
        """Initialize logger.

        Args:
            verbose: Enable debug output
            use_colors: Enable ANSI color codes
            quiet: Suppress info output
            stream: Output stream (defaults to sys.stderr at write time)
        """
        self.verbose = verbose
        self.quiet = quiet
        self._stream = stream
        self.use_colors = use_colors and self.stream.isatty()

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stderr

    def _colorize(self, text: str, color_code: str) -> str:
        if not self.use_colors:
            return text
        return f"\033[{color_code}m{text}\033[0m"

    def _emit(self, text: str) -> None:
        print(text, file=self.stream)

    def debug(self, message: str, **kwargs: Any) -> None:
        """Log debug message (only if verbose enabled).

        Args:
            message: Message to log
            **kwargs: Additional key-value pairs to include
        """
        if not self.verbose:
            return

        formatted = self._colorize(f"DEBUG: {message}", "36")  # Cyan
        if kwargs:
            details = " ".join(f"{k}={v!r}" for k, v in kwargs.items())
            formatted += f" ({details})"

        self._emit(formatted)

    def info(self, message: str) -> None:
        if self.quiet:
            return
        self._emit(self._colorize(message, "37"))  # White

    def warning(self, message: str) -> None:
        self._emit(self._colorize(f"Warning: {message}", "33"))  # Yellow

    def error(self, message: str, suggestion: str | None = None) -> None:
        """Log error message with optional suggestion.

        Args:
            message: Error message to log
            suggestion: Optional suggestion for fixing the error
        """
        self._emit(self._colorize(f"Error: {message}", "31"))  # Red

        if suggestion:
            self._emit(self._colorize(f"  -> {suggestion}", "33"))

    def exception(self, message: str, exc: BaseException) -> None:
        """Log exception, with traceback in verbose mode only.

        Args:
            message: Context message
            exc: Exception to log
        """
        self.error(f"{message}: {exc}")

        if self.verbose:
            tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
            self._emit(self._colorize(tb, "90"))  # Gray


def quiet_logger() -> Logger:
    """Logger used by services when the caller does not supply one."""
    return Logger(verbose=False, use_colors=False, quiet=True)
