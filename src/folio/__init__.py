"""Folio: auditable cleanup pipeline for public-domain book interiors."""

__version__ = "0.1.0"
