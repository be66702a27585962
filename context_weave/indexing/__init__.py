"""
Workspace indexing: file filters, syntax extractors and the background pipeline.
"""
