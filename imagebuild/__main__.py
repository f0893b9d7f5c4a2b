"""Entry point for ``python -m imagebuild``."""

from imagebuild.cli import app

if __name__ == "__main__":
    app(prog_name="imagebuild")
