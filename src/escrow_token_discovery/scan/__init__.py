"""Log scanning layer - range splitting and provider limit detection."""
