"""Gule marketplace back end: catalog, checkout, escrow and reviews."""
