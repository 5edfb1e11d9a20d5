"""Allow ``python -m kiln``."""

from kiln.CLI.main import main

if __name__ == "__main__":
    main()
