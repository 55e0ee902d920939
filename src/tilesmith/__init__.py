"""Tilesmith - seamless tile sharing and parametric AI tile generation."""

__version__ = "0.3.0"
