"""Allow ``python -m patternbank``."""

import sys

from .cli import main

sys.exit(main())
