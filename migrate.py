#!/usr/bin/env python3
"""
Run Alembic against the mail store with the project's migration config.

Usage:
    python migrate.py current                    # Show the applied revision
    python migrate.py upgrade head               # Create or update the accounts/threads/messages tables
    python migrate.py downgrade -1               # Roll back one revision
    python migrate.py revision -m "Description"  # New revision, autogenerated from app.models
    python migrate.py history                    # List revisions

`revision` gets --autogenerate added unless it is already there.
"""

import subprocess
import sys
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(override=True)

CONFIG_PATH = Path(__file__).parent / "migrations" / "alembic.ini"


def build_command(args: list[str]) -> list[str]:
    args = list(args)
    if args and args[0] == "revision" and "--autogenerate" not in args:
        args.insert(1, "--autogenerate")
    return [sys.executable, "-m", "alembic", "-c", str(CONFIG_PATH), *args]


def main() -> None:
    try:
        result = subprocess.run(build_command(sys.argv[1:]), check=False)
    except KeyboardInterrupt:
        print("\nOperation cancelled by user")
        sys.exit(1)
    except OSError as e:
        print(f"Error running migration command: {e}")
        sys.exit(1)
    sys.exit(result.returncode)


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)

    main()
