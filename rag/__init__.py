"""
RAG (Retrieval-Augmented Generation) components for the CRM knowledge service.

This module provides query routing, grounding context construction,
answer generation, and citation building.
"""
