"""
Test package for model learning, threshold calibration and background learning.
"""
