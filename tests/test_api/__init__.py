"""
Test package for the session registry and the flat API.
"""
