"""ptyhub: keep interactive CLI agents alive and reachable from the browser."""

__version__ = "0.1.0"
