"""Background worker that drains the document ingestion queue."""
