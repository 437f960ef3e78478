"""Entry point for ``python -m nekobot``."""

from nekobot.cli.commands import app

if __name__ == "__main__":
    app()
