"""Business logic services.

Services are called by route handlers and Celery tasks and orchestrate
database, object store, key service and LLM operations. Collaborators are
passed in explicitly; see services.providers for the process-wide wiring.
"""
