"""Module entry point: ``python -m vmsupervisor``."""

import sys

from vmsupervisor.cli import main

sys.exit(main())
