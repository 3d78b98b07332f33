#!/usr/bin/env python3
"""
Tailthon - Live Log Streaming

Tails PM2 process logs and streams new lines to WebSocket subscribers.
"""

import sys
from pathlib import Path

# Add the current directory to Python path for imports
sys.path.insert(0, str(Path(__file__).parent))

from tailthon.server import main

if __name__ == "__main__":
    main()
