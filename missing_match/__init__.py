"""
Missing Person Matching Engine

Matches submitted face embeddings against a registry of missing-person
cases using:
- Unit-normalized embeddings in a FAISS-backed store
- Remapped cosine similarity ranking with configurable thresholds
- An auditable match ledger with human verification
- FastAPI for the RESTful API
"""

__version__ = "1.0.0"
