"""Cloudflare tunnel and Access provisioning for tenant devices."""

__version__ = "0.1.0"
