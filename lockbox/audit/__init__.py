"""Lockbox audit log — who touched which secret, never what it held."""
