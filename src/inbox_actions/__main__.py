"""Allow `python -m inbox_actions`."""

from inbox_actions.cli import main

if __name__ == "__main__":
    main()
