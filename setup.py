#!/usr/bin/env python
"""
Minimal setup.py bridge for tools that still call setup.py directly.
All metadata and dependencies live in pyproject.toml.
"""

from setuptools import setup

setup()
