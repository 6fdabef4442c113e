"""Identity core application package."""
