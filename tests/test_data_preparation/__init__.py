"""
Test package for data preparation modules.

Covers image decoding, VOC annotation parsing, the on-disk image repository
and the reproducibility and file writing utilities.
"""
