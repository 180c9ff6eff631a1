"""Small standard-library helpers for hashing and guarded filesystem access."""
