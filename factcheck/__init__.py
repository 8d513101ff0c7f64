"""Human-in-the-loop fact verification for restructured knowledge documents."""

__version__ = "0.1.0"
