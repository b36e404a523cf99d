"""JSON schemas shipped with DockVault."""
