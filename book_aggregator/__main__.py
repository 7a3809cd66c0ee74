import sys

from book_aggregator.cli.main import main

if __name__ == "__main__":
    sys.exit(main())
