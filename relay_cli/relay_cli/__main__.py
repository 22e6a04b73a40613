"""Entry point for `python -m relay_cli` and the `relay` console script."""

from __future__ import annotations

from relay_cli.app import app


def main() -> None:
    app()


if __name__ == "__main__":
    main()
