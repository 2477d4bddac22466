"""Terminal rendering of rebuilt traces."""
