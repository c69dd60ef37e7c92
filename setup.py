#!/usr/bin/env python3
"""
Setup configuration for chillfi-client
A resilient client for a self-hosted music service with offline support
"""

from setuptools import setup, find_packages

# Read README for long description
with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

# Core requirements (always installed)
core_requirements = [
    "aiohttp>=3.9.1",
    "mutagen>=1.47.0",
    "click>=8.1.7",
    "rich-click>=1.7.0",
    "rich>=13.7.0",
    "pyyaml>=6.0.1",
    "tqdm>=4.66.1",
    "python-dotenv>=1.0.0",
]

setup(
    name="chillfi-client",
    version="0.1.0",
    author="ChillFi Team",
    description="Resilient ChillFi music service client with offline cache, write queue and resumable uploads",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(include=["chillfi_client", "chillfi_client.*"]),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Environment :: Console",
        "Intended Audience :: End Users/Desktop",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Multimedia :: Sound/Audio",
        "Topic :: Internet :: WWW/HTTP",
    ],
    python_requires=">=3.10",
    install_requires=core_requirements,
    extras_require={
        "dev": [
            "pytest>=7.4.3",
            "pytest-asyncio>=0.21.1",
            "black>=23.11.0",
            "flake8>=6.1.0",
            "mypy>=1.7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "chillfi=chillfi_client.cli:main",
        ],
    },
    keywords="music streaming upload offline websocket client cli",
)
