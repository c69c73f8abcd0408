#!/usr/bin/env python3
# =============================================================================
#  beam-spy setup.py
#
#  Runtime dependencies live in requirements.txt; the version lives in
#  beam_spy/__init__.py.
#
#      pip install -e ".[dev]"
#      python -m pytest
# =============================================================================

from __future__ import annotations

import re
from pathlib import Path

from setuptools import setup, find_packages

# ---------------------------------------------------------------------------
#  Version
# ---------------------------------------------------------------------------
_HERE = Path(__file__).resolve().parent


def _read_version() -> str:
    """Extract ``__version__`` from beam_spy/__init__.py."""
    init = _HERE / "beam_spy" / "__init__.py"
    text = init.read_text(encoding="utf-8")
    match = re.search(r'^__version__\s*=\s*"([^"]+)"', text, re.MULTILINE)
    if match:
        return match.group(1)
    return "0.0.0"


def _read_long_description() -> str:
    """README.md contents, or an empty string."""
    readme = _HERE / "README.md"
    if readme.exists():
        return readme.read_text(encoding="utf-8")
    return ""


def _read_requirements() -> list[str]:
    """Non-comment lines of requirements.txt."""
    req_file = _HERE / "requirements.txt"
    if req_file.exists():
        lines = req_file.read_text(encoding="utf-8").splitlines()
        return [
            ln.strip()
            for ln in lines
            if ln.strip() and not ln.strip().startswith("#")
        ]
    return []


_TEST_REQUIRES = [
    "pytest>=7.0",
    "pytest-cov>=4.0",
    "hypothesis>=6.0",
]

setup(
    name="beam-spy",
    version=_read_version(),
    description=(
        "BEAM object file analyzer: chunk tables, disassembly with source "
        "interleaving, and static call graphs."
    ),
    long_description=_read_long_description(),
    long_description_content_type="text/markdown",
    license="MIT",
    author="beam-spy contributors",
    python_requires=">=3.10",
    packages=find_packages(
        include=[
            "beam_spy",
            "beam_spy.*",
        ],
        exclude=[
            "tests",
            "tests.*",
        ],
    ),
    package_data={
        "beam_spy": ["py.typed", "data/genop.tab"],
    },
    install_requires=_read_requirements(),
    extras_require={
        "test": _TEST_REQUIRES,
        "dev": _TEST_REQUIRES + [
            "ruff>=0.4",
            "mypy>=1.10",
        ],
    },
    entry_points={
        "console_scripts": [
            "beam-spy=beam_spy.main:main",
        ],
    },
    classifiers=[
        "Development Status :: 3 - Alpha",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "Topic :: Software Development :: Disassemblers",
        "Topic :: Software Development :: Debuggers",
        "Typing :: Typed",
    ],
    keywords=[
        "beam",
        "erlang",
        "elixir",
        "disassembler",
        "bytecode",
        "call-graph",
    ],
    zip_safe=False,
)
