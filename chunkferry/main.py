from __future__ import annotations

from chunkferry.cli import run_cli


def main() -> None:
    raise SystemExit(run_cli())

if __name__ == "__main__":
    main()
