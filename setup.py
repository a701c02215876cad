#!/usr/bin/env python3
"""
kvlab Setup Script
==================
Allows installation of the kvlab package.

Usage:
    pip install -e .           # Development install
    pip install -e ".[test]"   # Development install with test tools
    pip install .              # Regular install
"""

from setuptools import setup, find_packages

setup(
    name="kvlab",
    version="1.0.0",
    description="In-memory RESP key-value server and client",
    packages=find_packages(exclude=["tests", "tests.*", "scripts"]),
    python_requires=">=3.10",
    extras_require={
        "test": [
            "pytest",
            "pytest-asyncio",
        ],
    },
    entry_points={
        "console_scripts": [
            "kvlab-server=kvlab.server:main",
        ],
    },
)
