#!/usr/bin/env python3
"""
sttqueue: main entry point when running from a source checkout.
Installed copies use the ``sttqueue`` console script instead.
"""

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from sttqueue.cli import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
