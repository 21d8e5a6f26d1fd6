"""Document question answering over uploaded files."""
