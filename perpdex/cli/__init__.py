"""perpdex command-line tools."""
