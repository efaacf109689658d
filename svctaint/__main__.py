"""Allow ``python -m svctaint``."""

from .cli import main

raise SystemExit(main())
