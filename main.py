"""brokertools entrypoint.

This file intentionally stays small. Startup lives in `brokertools/bootstrap.py`
and argument handling in `brokertools/cli.py`.

    python main.py stdio
    python main.py sse 127.0.0.1:8000
"""

from __future__ import annotations


def main() -> None:
    from brokertools.cli import main as cli_main

    cli_main()


if __name__ == "__main__":
    main()
