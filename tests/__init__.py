"""
Test suite for the MixDet toolkit.

Tests run on small synthetic images and repositories generated on disk:
- Geometry, status codes and progress reporting
- Images, annotations and repository access
- Feature extraction, background statistics and model files
- Learning, threshold calibration and evaluation
- Session registry and flat API
"""
