"""Command line interface for pbi-capture."""
