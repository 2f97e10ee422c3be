"""Configuration: environment helpers, tier catalog, reconciler settings."""
