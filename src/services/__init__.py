"""Device, signing, token, trust and security event services."""
