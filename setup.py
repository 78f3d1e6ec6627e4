"""
Setup script for the transportlab TCP vs UDP comparison lab.

This allows the package to be installed in development mode:
    pip install -e .

Or run directly:
    transportlab run --server 10.0.0.3 --proxy 10.0.0.2 --experiment all
"""

from setuptools import setup, find_packages

setup(
    name="transportlab",
    version="0.1.0",
    description="TCP vs UDP transport comparison lab orchestrator",
    package_dir={"": "src"},
    packages=find_packages("src"),
    python_requires=">=3.10",
    install_requires=[
        "pyyaml>=6.0",
        "python-dotenv>=1.0.0",
    ],
    extras_require={
        "dev": [
            "pytest",
            "pytest-mock",
            "black",
            "flake8",
            "mypy",
        ],
    },
    entry_points={
        "console_scripts": [
            "transportlab=transportlab.cli:main",
        ],
    },
)
