"""Typer entry point for DockVault."""
