"""ChatBI: natural-language BI chat over relational databases."""

__version__ = "0.1.0"
