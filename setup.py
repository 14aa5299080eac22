"""
Setup script for softparticle package.

Installation:
    pip install -e .
"""

from setuptools import setup, find_packages

setup(
    name="softparticle",
    version="0.1.0",
    description="Lagrangian particle tracking on decomposed meshes with two-way DEM coupling",
    packages=find_packages(include=["softparticle", "softparticle.*"]),
    python_requires=">=3.10",
    install_requires=[
        "numpy>=1.24",
        "scipy>=1.10",
        "matplotlib>=3.7",
        "numba>=0.58",
        "h5py>=3.8",
        "pyyaml>=6.0",
        "pydantic>=2.0",
        "tqdm>=4.65",
    ],
    extras_require={
        "dev": ["pytest>=7.3", "black>=23.0", "mypy>=1.3", "ipython>=8.12"],
        "test": ["pytest>=7.3"],
    },
)
