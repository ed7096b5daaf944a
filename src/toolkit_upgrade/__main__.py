"""Allow running the upgrade with ``python -m toolkit_upgrade``."""

import sys

from toolkit_upgrade.cli import main

sys.exit(main())
