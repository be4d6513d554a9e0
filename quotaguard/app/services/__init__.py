"""Services package for the rate limiting service."""
