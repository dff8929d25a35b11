#!/usr/bin/env python3
"""
DiceKV Setup Script
===================
Allows installation of the dicekv package.

Usage:
    pip install -e .           # Development install
    pip install -e ".[test]"   # With the test dependencies
    pip install .              # Regular install
"""

from setuptools import setup, find_packages

setup(
    name="dicekv",
    version="0.1.0",
    description="In-memory key-value server speaking RESP over TCP",
    packages=find_packages(exclude=("tests", "tests.*")),
    python_requires=">=3.10",
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "dicekv=dicekv.server:main",
            "dicekv-cli=dicekv.client:main",
        ],
    },
)
