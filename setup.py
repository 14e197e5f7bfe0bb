#!/usr/bin/env python3
"""Setup script for wasmc."""

from setuptools import setup

with open("README.md", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="wasmc",
    version="1.0.0",
    description="Incremental builds of WebAssembly modules with a persistent build executor",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="wasmc contributors",
    license="MIT",
    packages=["wasmc"],
    python_requires=">=3.9",
    install_requires=[
        "PyYAML>=6.0",
        "watchdog>=3.0",
    ],
    extras_require={
        "test": ["pytest>=7.0"],
    },
    entry_points={
        "console_scripts": [
            "wasmc=wasmc.cli:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "Topic :: Software Development :: Build Tools",
    ],
    keywords="webassembly wasm emscripten build incremental",
)
