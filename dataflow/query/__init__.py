"""
Query

Read access to persisted bars.
"""
