"""Module contract and built-in test double."""
