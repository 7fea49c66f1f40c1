#!/usr/bin/env python3
"""
Setup configuration for the mne agents package
"""

from setuptools import setup, find_packages

setup(
    name="mne-agents",
    version="1.0.0",
    description="Natural-language portfolio command agent and ledger engine",
    packages=find_packages(exclude=["tests", "tests.*"]),
    python_requires=">=3.9",
    install_requires=[
        "python-dotenv>=1.0.0",
        "supabase>=2.0.0",
        "langchain-core>=0.3.0",
        "langchain-anthropic>=0.3.0",
        "pydantic>=2.0.0",
        "pandas>=2.0.0",
        "requests>=2.31.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0.0",
            "pytest-mock>=3.10.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "mne=mne_agents.cli:main",
        ],
    },
)
