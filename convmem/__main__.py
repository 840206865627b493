"""Entry point for ``python -m convmem``."""

from convmem.cli.commands import app

if __name__ == "__main__":
    app()
