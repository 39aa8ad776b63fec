"""Entry point for running the certificate service as a module."""

from .server import main

if __name__ == "__main__":
    main()
