"""Event publication and webhook delivery service."""
