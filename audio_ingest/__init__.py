"""Upload coordination engine for large audio files."""
