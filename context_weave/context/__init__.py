"""
Context assembly: candidate collection, scoring and token-budget fitting.
"""
