"""Ways of producing a fresh trace to inspect."""
