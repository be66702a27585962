"""
Conversation memory and pruning strategies.
"""
