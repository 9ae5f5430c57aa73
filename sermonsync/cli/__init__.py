"""sermonsync command line interface."""
