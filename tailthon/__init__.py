"""
Tailthon - Live Log Streaming

This package tails process log files and streams newly appended lines to
WebSocket subscribers, rendered as HTML-safe text.
"""

__version__ = "0.1.0"
