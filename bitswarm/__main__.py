"""Allow ``python -m bitswarm``."""

from bitswarm.cli.main import main

if __name__ == "__main__":
    main()
