"""Catalog retrieval: vector search adapter and per-category candidate selection."""

from .candidates import CandidateRetriever, is_accessory, is_excluded, pick_most_popular
from .vector_store import QdrantVectorSearch, SearchHit, VectorSearch, candidate_from_hit

__all__ = [
    "CandidateRetriever",
    "QdrantVectorSearch",
    "SearchHit",
    "VectorSearch",
    "candidate_from_hit",
    "is_accessory",
    "is_excluded",
    "pick_most_popular",
]
