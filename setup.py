"""
Setup script for Testnet Harness
"""
from setuptools import setup, find_packages


setup(
    name="testnet-harness",
    version="1.0.0",
    description="Launch, probe, cache and control local blockchain test networks",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "aiohttp>=3.9",
        "psutil>=6.0",
        "PyYAML>=6.0",
        "rich>=13.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    entry_points={
        "console_scripts": [
            "testnet-harness=harness_core.cli:main",
        ],
    },
    zip_safe=False,
)
