"""Entry point for integration-workflows.

Supports ``python -m integration_workflows`` and the ``integration-workflows``
console script.
"""

import sys


def main() -> None:
    """Entry point for direct execution."""
    from .cli import main as cli_main

    sys.exit(cli_main())


if __name__ == "__main__":
    main()
