"""AI hairstyle simulation backend: generation economy core."""
