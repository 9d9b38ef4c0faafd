"""
Test package for detection, evaluation statistics and the model evaluator.
"""
