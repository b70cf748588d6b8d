import sys

from tesla_archiver.cli import main

if __name__ == "__main__":
    sys.exit(main())
