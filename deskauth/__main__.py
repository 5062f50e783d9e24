"""Allow ``python -m deskauth``."""

import sys

from .cli import main


sys.exit(main())
