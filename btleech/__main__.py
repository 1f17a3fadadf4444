"""Allow ``python -m btleech``."""

from __future__ import annotations

from btleech.cli.main import main

if __name__ == "__main__":
    main()
