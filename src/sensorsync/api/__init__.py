"""Remote producer HTTP surface."""
