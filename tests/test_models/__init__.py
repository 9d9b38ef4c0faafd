"""
Test package for feature extractors, background statistics and model files.
"""
