"""Authentication and admin authorization."""
