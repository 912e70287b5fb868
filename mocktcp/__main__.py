import sys

from mocktcp.cli import main

if __name__ == "__main__":
    sys.exit(main())
