"""
Debrid-Stream
Resolves torrent files to direct links through a debrid provider, with availability and response caching.
"""

__version__ = "1.0.0"
