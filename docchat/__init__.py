"""Document-grounded chat assistant core."""
