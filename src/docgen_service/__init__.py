"""
Document Generation Service package.

This module provides a FastAPI application that fills .docx templates with
JSON data (`/generate-docx`) and converts documents to PDF (`/upload`).
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
