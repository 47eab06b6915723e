"""brawlsync - quota-aware synchronization worker for the Brawlhalla API."""

__version__ = "0.1.0"
