"""Optional Qt user interface for terrycore."""

from .state_viewer import StateViewerWidget

__all__ = ["StateViewerWidget"]
