"""Entry point for `python -m claimflow`."""

import sys

from claimflow.cli import main

sys.exit(main())
