"""Entry point for running the job tracker as a module.

Usage:
    python -m jobtracker validate-config
    python -m jobtracker --help
"""

from jobtracker.cli import main

if __name__ == "__main__":
    main()
