"""
Query API

FastAPI app serving persisted bars and checkpoints.
"""
