from memloom.retrieval.vector import SimilaritySearch, similarity_from_distance

__all__ = ["SimilaritySearch", "similarity_from_distance"]
