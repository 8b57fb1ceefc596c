"""HTTP surface for SQL generation."""
