"""Allow ``python -m rampload``."""

from rampload.cli import main

raise SystemExit(main())
