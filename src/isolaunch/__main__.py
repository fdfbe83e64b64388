import sys

from isolaunch.cli import main

# This runs the main function and ensures the process exits with the child's status code.
if __name__ == "__main__":
    sys.exit(main())
