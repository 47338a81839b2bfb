from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler


def configure_logging(verbose: bool = False, *, console: Console | None = None) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    handler = RichHandler(console=console, show_path=verbose, rich_tracebacks=verbose, markup=False)
    handler.setFormatter(logging.Formatter("%(name)s: %(message)s"))

    root = logging.getLogger("treepush")
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False
    # httpx logs every request at info; keep it quiet unless debugging.
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)
