"""Allow `python -m convoy`."""

from convoy.cli import app

if __name__ == "__main__":
    app()
