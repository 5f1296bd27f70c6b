"""
Setup script for the StockBasket multi-broker trading core.

Proper package configuration for easy installation with pip install -e .
"""

from pathlib import Path

from setuptools import find_packages, setup


def read_requirements():
    """Read requirements from requirements-minimal.txt."""
    req_file = Path(__file__).parent / "requirements-minimal.txt"
    if req_file.exists():
        with open(req_file) as f:
            return [
                line.strip()
                for line in f
                if line.strip() and not line.startswith('#') and not line.startswith('=')
            ]
    return []


setup(
    name="stockbasket",
    version="0.1.0",
    description="Multi-broker basket trading core for Zerodha Kite and Angel One",
    packages=find_packages(include=['stockbasket', 'stockbasket.*']),
    install_requires=read_requirements(),
    extras_require={
        'test': [
            'pytest>=7.4.0',
            'pytest-asyncio>=0.23.0',
        ],
    },
    python_requires=">=3.11",
    entry_points={
        'console_scripts': [
            'stockbasket=stockbasket.cli:main',
        ],
    },
)
