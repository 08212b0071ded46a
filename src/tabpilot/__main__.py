"""Allow `python -m tabpilot` to run a goal."""

import sys

from tabpilot.main import main

sys.exit(main())
