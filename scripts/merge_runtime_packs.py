#!/usr/bin/env python3
import sys

from runtime_merge.cli import main

if __name__ == "__main__":
    sys.exit(main())
