"""
Test package for the core primitives (geometry, status codes, progress).
"""
