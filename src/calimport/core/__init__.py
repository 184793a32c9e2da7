"""Process-level plumbing shared by the CLI and library entry points."""

from calimport.core.logging import configure_logging, set_import_context

__all__ = ["configure_logging", "set_import_context"]
