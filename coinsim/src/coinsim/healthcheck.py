"""
Healthcheck for the worker container.

Verifies that the package imports and that the configured environment
parses.  It is not a liveness probe for the order monitor itself.
"""

import sys


def main() -> None:
    try:
        from coinsim.config import Settings

        Settings.from_env()
    except (ImportError, ValueError) as exc:  # pragma: no cover - healthcheck only
        print(f"Healthcheck failed: {exc}", file=sys.stderr)
        sys.exit(1)
    print("ok")


if __name__ == "__main__":
    main()
