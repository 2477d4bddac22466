"""Polling loop that waits for a trace to settle."""
