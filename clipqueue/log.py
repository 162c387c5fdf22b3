import logging
from rich.console import Console
from rich.logging import RichHandler


def configure_logging(verbose: bool = False, console: Console = None):
    """Route the package loggers through rich. Safe to call more than once."""
    level = logging.DEBUG if verbose else logging.INFO
    root = logging.getLogger("clipqueue")
    root.setLevel(level)
    for handler in list(root.handlers):
        if isinstance(handler, RichHandler):
            root.removeHandler(handler)
    handler = RichHandler(console=console or Console(stderr=True), show_path=False, rich_tracebacks=True)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))
    root.addHandler(handler)
    root.propagate = False
    return root
