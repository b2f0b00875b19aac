"""Random IIIF canvas showcase: manifest ingestion and canvas selection."""

__version__ = "0.3.0"
