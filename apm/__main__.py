"""Allow running the supervisor as a module: python -m apm."""

from apm.runner import main

if __name__ == "__main__":
    main()
