from __future__ import annotations

from zeeman_pl.pipeline import main

if __name__ == "__main__":
    raise SystemExit(main())
