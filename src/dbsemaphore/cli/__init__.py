"""``dbsem`` command-line interface."""
