"""Chart ranking pipeline services."""
