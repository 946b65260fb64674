"""
Module entrypoint for the coldstash CLI.

This file exists so that `python -m coldstash ...` works when the console-script
wrapper is not installed. It contains no business logic.
"""

from __future__ import annotations

from coldstash.cli import main

if __name__ == "__main__":
    raise SystemExit(main())
