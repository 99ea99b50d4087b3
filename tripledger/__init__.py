"""Trip ledger: trips, expenses and a trip total that always matches them."""

__version__ = "0.1.0"
