"""Local commerce marketplace backend: shops, products, carts, orders and payments."""

__version__ = "1.0.0"
