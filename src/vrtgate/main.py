"""Main entry point for the vrtgate command line."""

import sys


def main_cli() -> None:
    """Entry point for the CLI application."""
    try:
        from .cli.main import cli

        cli()
    except KeyboardInterrupt:
        print("\n❌ Operation cancelled by user", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    main_cli()
