import sys

from runtime_merge.cli import main

sys.exit(main())
