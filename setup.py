#!/usr/bin/env python3
"""
Setup script for flowmap.
"""

from setuptools import setup, find_packages
import os

def parse_requirements(filename):
    """Parse a pip requirements file into a list of install_requires."""
    if not os.path.exists(filename):
        return []
    with open(filename, "r") as f:
        lines = f.readlines()
    return [
        line.strip()
        for line in lines
        if line.strip() and not line.strip().startswith("#")
    ]

setup(
    name="flowmap",
    version="1.0.0",
    author="flowmap developers",
    description="Hierarchical community detection with the map equation",
    packages=find_packages(include=["flowmap", "flowmap.*"]),
    include_package_data=True,
    package_data={"flowmap": ["config.yaml"]},
    zip_safe=False,
    install_requires=parse_requirements("pip_requirements.txt"),
    extras_require={
        "test": ["pytest>=7.0"],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    python_requires=">=3.8",
)
