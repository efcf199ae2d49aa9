"""
Terminal formatting for text sent to the editor's console.

The editor renders output events in an xterm-compatible terminal, so
orchestrator messages are marked with ANSI colors and CRLF line endings.
"""

from __future__ import annotations

RESET = "\x1b[0m"
RED = "\x1b[31m"
GREEN = "\x1b[32m"
YELLOW = "\x1b[33m"
CYAN = "\x1b[36m"
DIM = "\x1b[2m"

CRLF = "\r\n"


def colorize(text: str, color: str) -> str:
    """Wrap text in an ANSI color sequence."""
    return f"{color}{text}{RESET}"


def system_line(message: str, color: str = CYAN) -> str:
    """Format an orchestrator status line, e.g. ``[System] Installing: lodash...``."""
    return f"{color}[System] {message}{CRLF}{RESET}"


def error_line(message: str, label: str = "Error") -> str:
    """Format an orchestrator diagnostic line, e.g. ``[Error] index.js not found.``."""
    return f"{RED}[{label}] {message}{RESET}{CRLF}"


def stderr_chunk(chunk: str) -> str:
    """Mark a chunk read from the guest's standard error."""
    return colorize(chunk, RED)


def exit_line(code: int | None, signal_name: str | None = None) -> str:
    """Format the final line printed when a guest process exits."""
    if signal_name:
        return f"{CRLF}{DIM}[Process terminated by {signal_name}]{RESET}{CRLF}"
    return f"{CRLF}{DIM}[Process exited with code {code}]{RESET}{CRLF}"
