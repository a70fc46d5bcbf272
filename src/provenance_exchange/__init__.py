"""Provenance Exchange — transactional core of an authenticated collectibles marketplace."""

__version__ = "0.1.0"
