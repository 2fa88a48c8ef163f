"""Tenant custom domains: DNS ownership verification and automatic TLS."""

__version__ = "0.1.0"
