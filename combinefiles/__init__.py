"""combinefiles – merge many source files into token-bounded text bundles."""

__version__ = "1.4.0"
