"""CLI entry point for nanojournal.

Commands:
- nanojournal version
- nanojournal memory status
- nanojournal memory top
- nanojournal memory stale
- nanojournal memory expire
- nanojournal memory show <pattern_id>
- nanojournal memory compact <conversation_id>
"""

import typer
from rich.console import Console

from nanojournal import __logo__, __version__
from nanojournal.cli.memory_commands import memory_app
from nanojournal.config.loader import load_config
from nanojournal.utils.logging import configure_logging

console = Console()

app = typer.Typer(
    name="nanojournal",
    help=f"{__logo__} nanojournal - long-term pattern memory for your journal",
    no_args_is_help=True,
)
app.add_typer(memory_app, name="memory")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logs"),
):
    """Configure logging before any command runs."""
    configure_logging(load_config().logging, verbose=verbose)


@app.command("version")
def version():
    """Show version information."""
    console.print(f"{__logo__} nanojournal v{__version__}")


if __name__ == "__main__":
    app()
