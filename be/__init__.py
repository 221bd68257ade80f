"""Backend package: DB models, job queue, pipelines, API.

Records flow from an ingest submission through field extraction, duplicate
filtering and chunked storage into optional batched vectorization. Stored
records are then served by similarity search and guideline alignment.
"""
