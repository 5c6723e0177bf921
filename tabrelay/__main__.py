"""Allow ``python -m tabrelay``."""

from tabrelay.cli import app

if __name__ == "__main__":
    app()
