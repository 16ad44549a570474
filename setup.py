from __future__ import annotations

from pathlib import Path

from setuptools import find_packages, setup


ROOT = Path(__file__).resolve().parent


def read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8")


VERSION = read_text(ROOT / "VERSION").strip()
README = read_text(ROOT / "README.md")


setup(
    name="sasjsclient",
    version=VERSION,
    description="Async client for running jobs on SAS Viya, SAS 9 and SASjs servers.",
    long_description=README,
    long_description_content_type="text/markdown",
    author="SASjs Client Team",
    python_requires=">=3.9",
    packages=find_packages(include=["sasjsclient", "sasjsclient.*"]),
    include_package_data=True,
    install_requires=[
        "httpx>=0.24",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
            "pytest-asyncio>=0.21",
        ],
    },
    classifiers=[
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3 :: Only",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
    ],
    keywords=["sas", "viya", "sasjs", "client", "jobs"],
)
