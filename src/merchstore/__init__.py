"""Band merch store: cart, checkout and order lifecycle."""

__version__ = "0.1.0"
