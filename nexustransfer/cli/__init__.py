"""Interactive shell for nexustransfer."""
