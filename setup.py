"""
Setup script for the MixDet toolkit.

Configures the package for installation, including the command-line tools
for model learning, background statistics learning and model evaluation.

Author: MixDet Toolkit Team
Date: October 2026
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README for long description
def read_readme():
    readme_path = Path(__file__).parent / "README.md"
    if readme_path.exists():
        with open(readme_path, "r", encoding="utf-8") as fh:
            return fh.read()
    return "MixDet - mixture-of-templates object detector learning and evaluation"

# Read requirements
def read_requirements():
    requirements_path = Path(__file__).parent / "requirements.txt"
    if requirements_path.exists():
        with open(requirements_path, "r", encoding="utf-8") as fh:
            return [
                line.strip()
                for line in fh
                if line.strip() and not line.startswith("#") and not line.startswith("--")
            ]
    return []

# Read version from package
def get_version():
    """Extract version from package."""
    init_path = Path(__file__).parent / "mixdet" / "__init__.py"
    with open(init_path, "r", encoding="utf-8") as fh:
        for line in fh:
            if line.startswith("__version__"):
                return line.split("=")[1].strip().strip('"\'')
    return "1.0.0"

setup(
    name="mixdet",
    version=get_version(),
    author="MixDet Toolkit Team",
    author_email="contact@example.com",
    description="Learning, calibration and evaluation of mixture-of-templates object detectors",
    long_description=read_readme(),
    long_description_content_type="text/markdown",

    # Package configuration
    packages=find_packages(include=["mixdet", "mixdet.*"]),
    package_dir={"": "."},

    # Dependencies
    python_requires=">=3.8",
    install_requires=read_requirements(),

    # Optional dependencies for different use cases
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-cov>=4.1.0",
        ],
        "test": [
            "pytest>=7.4.0",
        ],
    },

    # Entry points for command-line tools
    entry_points={
        "console_scripts": [
            "mixdet-learn=mixdet.training.learner:main",
            "mixdet-learn-bg=mixdet.training.background_learning:main",
            "mixdet-evaluate=mixdet.evaluation.evaluator:main",
        ],
    },

    # Package metadata
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "Topic :: Scientific/Engineering :: Image Recognition",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Operating System :: OS Independent",
    ],

    # Keywords for searchability
    keywords=[
        "computer-vision", "object-detection", "whitened-hog", "lda",
        "sliding-window", "model-evaluation"
    ],

    # Data files
    data_files=[
        ("config", ["config.yaml"]),
    ],

    # Zip safety
    zip_safe=False,

    # License
    license="MIT",

    # Platform requirements
    platforms=["any"],
)
