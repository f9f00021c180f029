"""sliceclient - editor-side supervisor for the Slice language server."""

__version__ = "0.1.0"
