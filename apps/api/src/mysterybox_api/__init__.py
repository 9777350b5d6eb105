"""Mystery box economy service."""
