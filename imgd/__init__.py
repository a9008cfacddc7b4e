"""
imgd - Image Ingestion Service

FastAPI service that accepts WebP uploads, validates them while streaming,
and stores them as immutable content-addressed files.
"""

__version__ = "0.1.0"
