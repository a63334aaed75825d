"""Report layer - ranking and output."""
