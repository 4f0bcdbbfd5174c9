"""
PDF Converter Service package.

This module provides a FastAPI application (``pdf_converter.webapi``) for
chunked uploads and image/PDF conversion, a small HTTP client and a
Streamlit front end built on it.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
