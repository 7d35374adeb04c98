"""
Setup script for torch-criterion.

Package metadata lives in pyproject.toml. The package is pure PyTorch and
builds no extensions:
    pip install -e ".[test]"
"""

from setuptools import setup


def main():
    setup()


if __name__ == "__main__":
    main()
