# Rollarr - Sonarr webhook batching and Plex-driven rolling monitoring
__version__ = "0.1.0"
