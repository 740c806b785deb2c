"""
terrycore state viewer - main entry point.

Opens a local state file read-only in a StateViewerWidget.
"""

import argparse
import logging
import sys
from typing import List, Optional

from PySide6.QtWidgets import QApplication

from .. import __version__
from ..config import Settings
from ..core.engine import Engine
from ..core.providers import ProviderRegistry
from ..core.state_store import LocalBackend, StateStore
from ..utils import setup_logging
from .state_viewer import StateViewerWidget


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="terrycore-viewer", description=__doc__)
    parser.add_argument("state_file", nargs="?", help="State file (defaults to the state.path setting)")
    parser.add_argument("--config", help="Settings file")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the state viewer."""
    args = parse_args(argv)
    settings = Settings(args.config)

    setup_logging(log_level=settings.get("log_level", "INFO"), log_file=True)
    logger = logging.getLogger(__name__)
    logger.info(f"terrycore viewer v{__version__} starting...")

    state_file = args.state_file or settings.get("state.path")
    # Never written: the viewer only reads state and lock
    store = StateStore(LocalBackend(state_file, backup=False))
    engine = Engine(store, ProviderRegistry(), refresh=False)

    app = QApplication(sys.argv[:1])
    app.setApplicationName("terrycore viewer")

    viewer = StateViewerWidget(
        extra_sensitive=settings.get("viewer.sensitive_fields", []),
        font_family=settings.get("viewer.font_family", "monospace"),
        font_size=settings.get("viewer.font_size", 9),
    )
    viewer.setWindowTitle(f"terrycore state - {state_file}")
    viewer.resize(900, 600)
    viewer.set_engine(engine)
    viewer.show()

    exit_code = app.exec()
    logger.info("terrycore viewer exiting")
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
