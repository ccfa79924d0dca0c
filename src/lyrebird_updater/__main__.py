"""Allow ``python -m lyrebird_updater``."""

import sys

from lyrebird_updater.cli import main

if __name__ == "__main__":
    sys.exit(main())
