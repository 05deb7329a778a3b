#!/usr/bin/env python3
"""
vmtest - VM integration test runner

Entry point script for running vmtest from a source checkout.

Usage:
    ./vmtest.py run --qemu-image image.img     # Run all tests on QEMU
    ./vmtest.py run 'cl.etcd.*'                # Run matching tests
    ./vmtest.py list --filter -p aws           # List tests for a platform
    ./vmtest.py check-console console.txt      # Scan a saved console log
    ./vmtest.py --help                         # Show help
"""

import sys
from pathlib import Path

# Add the project root to path so the vmtest package can be imported
project_root = Path(__file__).parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from vmtest.cli import main

if __name__ == "__main__":
    main()
