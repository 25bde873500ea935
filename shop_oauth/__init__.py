"""Shopify OAuth install service."""
