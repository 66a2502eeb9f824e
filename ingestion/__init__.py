"""
Knowledge ingestion pipeline: preprocessing, chunking, embedding and storage.
"""
