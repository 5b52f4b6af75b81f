"""Module entrypoint for ``python -m vmachine``."""

import sys

from vmachine import cli

sys.exit(cli.main())
