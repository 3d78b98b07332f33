"""
Conversion of raw process output into HTML that a browser can display as is.

Process logs routinely carry ANSI color codes. Lines are decoded with rich,
HTML-escaped, and the remaining styles are emitted as inline ``<span>`` tags.
"""

import io
from html import escape
from typing import Iterable

from rich.console import Console
from rich.segment import Segment
from rich.terminal_theme import DEFAULT_TERMINAL_THEME, TerminalTheme
from rich.text import Text

LINE_BREAK = "<br/>"

# Only used to resolve styles while rendering, nothing is printed.
_console = Console(file=io.StringIO(), force_terminal=True, color_system="truecolor")


def ansi_to_html(line: str, theme: TerminalTheme = DEFAULT_TERMINAL_THEME) -> str:
    """
    Convert a single line of terminal output to an HTML fragment.

    Args:
        line: Raw line, possibly containing ANSI escape sequences
        theme: Terminal theme used to map the standard colors

    Returns:
        str: Escaped HTML with inline styles
    """
    text = Text.from_ansi(line)
    fragments = []
    for segment in Segment.simplify(Segment.filter_control(text.render(_console))):
        content = escape(segment.text)
        rule = segment.style.get_html_style(theme) if segment.style else ""
        fragments.append(f'<span style="{rule}">{content}</span>' if rule else content)
    return "".join(fragments)


def lines_to_html(lines: Iterable[str]) -> str:
    """Convert a batch of lines and join them with a line break marker."""
    return LINE_BREAK.join(ansi_to_html(line) for line in lines)
