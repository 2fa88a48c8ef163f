"""HTTP routes for the custom domain service."""
