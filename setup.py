#!/usr/bin/env python3
"""
Setup script for Sandbox Relay

Install with:
    pip install -e .

With test dependencies:
    pip install -e ".[dev]"
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README
readme_path = Path(__file__).parent / "README.md"
long_description = ""
if readme_path.exists():
    long_description = readme_path.read_text(encoding="utf-8")

# Server dependencies
server_requirements = [
    "fastapi>=0.110.0",
    "uvicorn[standard]>=0.27.0",
    "pydantic>=2.5.0",
    "pydantic-settings>=2.1.0",
    "redis>=5.0.0",
    "httpx>=0.26.0",
    "daytona-sdk>=0.21.0",
]

# CLI dependencies
cli_requirements = [
    "rich>=13.7.0",
    "python-dotenv>=1.0.0",
]

setup(
    name="sandbox-relay",
    version="1.0.0",
    description="Per-tenant remote sandboxes with a streaming agent bridge",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="MIT",
    package_dir={
        "sandbox_relay": "backend/sandbox_relay",
    },
    packages=find_packages(include=["cli", "cli.*"]) + [
        "sandbox_relay." + name if name else "sandbox_relay"
        for name in [""] + find_packages(where="backend/sandbox_relay")
    ],
    python_requires=">=3.10",
    install_requires=server_requirements + cli_requirements,
    extras_require={
        "dev": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.23.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "sandbox-relay=cli.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 4 - Beta",
        "Framework :: FastAPI",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
    ],
    keywords="sandbox daytona claude sse fastapi",
)
