import logging

import typer

from ... import __version__
from .commands.onebot import register_onebot_commands
from .commands.utils import raise_exit as _raise_exit

logger = logging.getLogger("onebot_bridge.cli")

app = typer.Typer(add_completion=False)


def _version_callback(value: bool) -> None:
    if not value:
        return
    typer.echo(f"onebot-bridge {__version__}")
    raise typer.Exit(code=0)


@app.callback()
def _root(
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show the version and exit.",
    ),
) -> None:
    return


def main() -> None:
    """Entrypoint for CLI execution."""
    app()


register_onebot_commands(app, raise_exit=_raise_exit)


if __name__ == "__main__":
    main()
