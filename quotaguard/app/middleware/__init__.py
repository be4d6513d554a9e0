"""Middleware package for the rate limiting service."""
