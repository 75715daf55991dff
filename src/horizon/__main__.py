"""Main entry point dispatcher for horizon commands."""

import sys


def main():
    """Dispatch to appropriate submodule based on command."""
    print("Use 'python -m horizon.agent' to run the agent")
    print("Use 'horizonctl' for the command-line interface")
    sys.exit(1)


if __name__ == "__main__":
    main()
