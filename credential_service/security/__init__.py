"""Password hashing, token issuance and rate limiting."""
