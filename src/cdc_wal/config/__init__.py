"""Reader configuration models and loaders."""
