"""Deep links into the trace UI."""
