"""Driver injection for Windows installation images (WIM and ISO)."""

from .__version__ import __version__


__all__ = ["__version__"]
