"""Request middleware: structured logging and request timing."""
