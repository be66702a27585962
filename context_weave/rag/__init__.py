"""
Embedding generation and vector similarity search.

Provides the embedder chain (local model, remote API, deterministic
fallback), the vector index abstraction with a Chroma backend, and cosine
similarity helpers.
"""
