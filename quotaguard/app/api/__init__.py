"""HTTP routers for the rate limiting service."""
