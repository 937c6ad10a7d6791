"""Entry point for ``python -m payroll_core``."""

import sys

from payroll_core.cli import main

if __name__ == "__main__":
    sys.exit(main())
