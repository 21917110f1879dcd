"""U-Fresher realtime content and membership coordinator."""

__version__ = "1.0.0"
