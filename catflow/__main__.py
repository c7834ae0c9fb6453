"""Allow ``python -m catflow``."""

from .main import main

raise SystemExit(main())
