"""Merchant billing backend."""
