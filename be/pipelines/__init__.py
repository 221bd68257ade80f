"""Pipelines for ingestion, vectorization, similarity and alignment.

Each step takes an AsyncSession (and the model gateway where needed) so it
can run inside a queued job or directly from a request handler.
"""
