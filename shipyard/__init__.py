"""Shipyard - git-driven static site build and deployment pipeline."""

__version__ = "0.1.0"
