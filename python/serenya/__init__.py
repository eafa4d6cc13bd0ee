"""Serenya backend: document analysis jobs, chat jobs and field encryption."""
