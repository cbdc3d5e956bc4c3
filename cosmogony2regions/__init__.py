"""
cosmogony2regions — Load a cosmogony zone hierarchy into a PostGIS
administrative_regions table for reverse geocoding.
"""

__version__ = "0.2.0"
