"""Iska Service OS payments and tenant provisioning backend."""
