"""Small helpers shared across lmgo modules."""
