"""
Knowledge pipeline configuration
Environment-driven settings for embedding, chunking, ingestion, search and generation
"""

import os

from dotenv import load_dotenv

load_dotenv()

# Google API configuration (embeddings + generation)
GOOGLE_API_KEY = os.getenv('GOOGLE_API_KEY')

# Vector embedding configuration
EMBEDDING_CONFIG = {
    'model': os.getenv('EMBEDDING_MODEL', 'models/embedding-001'),
    'dimensions': int(os.getenv('EMBEDDING_DIMENSIONS', '768')),
    'max_input_tokens': int(os.getenv('EMBEDDING_MAX_INPUT_TOKENS', '8191')),
    'max_input_chars': int(os.getenv('EMBEDDING_MAX_INPUT_CHARS', '25000')),
    'batch_size': int(os.getenv('EMBEDDING_BATCH_SIZE', '100')),
    'batch_delay': float(os.getenv('EMBEDDING_BATCH_DELAY', '0.1')),
    'max_retries': int(os.getenv('EMBEDDING_MAX_RETRIES', '3')),
    'retry_delay': float(os.getenv('EMBEDDING_RETRY_DELAY', '1.0')),
    'request_timeout_seconds': int(os.getenv('EMBEDDING_REQUEST_TIMEOUT_SECONDS', '30')),
}

# Query embedding cache (bounded LRU with TTL)
CACHE_CONFIG = {
    'enabled': os.getenv('QUERY_CACHE_ENABLED', 'true').lower() == 'true',
    'capacity': int(os.getenv('QUERY_CACHE_CAPACITY', '2048')),
    'ttl_seconds': int(os.getenv('QUERY_CACHE_TTL_SECONDS', '3600')),
}

# Document chunking configuration (sizes are in estimated tokens)
CHUNKING_CONFIG = {
    'chunk_size': int(os.getenv('CHUNK_SIZE', '1000')),
    'chunk_overlap': int(os.getenv('CHUNK_OVERLAP', '200')),
    'preserve_structure': os.getenv('CHUNK_PRESERVE_STRUCTURE', 'true').lower() == 'true',
    'boundary_window': float(os.getenv('CHUNK_BOUNDARY_WINDOW', '0.25')),
    'chars_per_token': float(os.getenv('CHUNK_CHARS_PER_TOKEN', '3.5')),
    'record_chunk_size': int(os.getenv('RECORD_CHUNK_SIZE', '500')),
    'record_chunk_overlap': int(os.getenv('RECORD_CHUNK_OVERLAP', '100')),
}

# Ingestion orchestration configuration
INGESTION_CONFIG = {
    'insert_batch_size': int(os.getenv('INGESTION_INSERT_BATCH_SIZE', '100')),
    'item_delay': float(os.getenv('INGESTION_ITEM_DELAY', '0.1')),
}

# Similarity search configuration
SEARCH_CONFIG = {
    # "orm" queries pgvector through SQLAlchemy, "rpc" calls rag_similarity_search()
    'backend': os.getenv('VECTOR_SEARCH_BACKEND', 'orm'),
    'rpc_function': os.getenv('VECTOR_SEARCH_RPC_FUNCTION', 'rag_similarity_search'),
    'default_limit': int(os.getenv('SEARCH_DEFAULT_LIMIT', '5')),
    'max_limit': int(os.getenv('SEARCH_MAX_LIMIT', '20')),
    'similarity_threshold': float(os.getenv('SEARCH_SIMILARITY_THRESHOLD', '0.7')),
    'max_attempts': int(os.getenv('SEARCH_MAX_ATTEMPTS', '3')),
    'retry_delay': float(os.getenv('SEARCH_RETRY_DELAY', '0.3')),
}

# Answer generation configuration
GENERATION_CONFIG = {
    'model': os.getenv('GENERATION_MODEL', 'gemini-2.0-flash'),
    'temperature': float(os.getenv('GENERATION_TEMPERATURE', '0.3')),
    'max_output_tokens': int(os.getenv('GENERATION_MAX_OUTPUT_TOKENS', '500')),
    'max_attempts': int(os.getenv('GENERATION_MAX_ATTEMPTS', '3')),
    'retry_delay': float(os.getenv('GENERATION_RETRY_DELAY', '0.5')),
    'max_context_tokens': int(os.getenv('GENERATION_MAX_CONTEXT_TOKENS', '4000')),
    'excerpt_chars': int(os.getenv('CITATION_EXCERPT_CHARS', '200')),
    'similarity_weight': float(os.getenv('CONFIDENCE_SIMILARITY_WEIGHT', '0.7')),
    'completeness_weight': float(os.getenv('CONFIDENCE_COMPLETENESS_WEIGHT', '0.3')),
    'completeness_chars': int(os.getenv('CONFIDENCE_COMPLETENESS_CHARS', '100')),
    'max_confidence': float(os.getenv('CONFIDENCE_MAX', '0.95')),
}

# Logging configuration
LOGGING_CONFIG = {
    'level': os.getenv('LOG_LEVEL', 'INFO'),
    'enable_file_logging': os.getenv('LOG_ENABLE_FILE', 'false').lower() == 'true',
    'enable_structured_logging': os.getenv('LOG_STRUCTURED', 'true').lower() == 'true',
    'logs_dir': os.getenv('LOG_DIR', 'logs'),
}

# Environment-specific configuration
if os.getenv('ENVIRONMENT') == 'development':
    # Faster feedback while iterating locally
    EMBEDDING_CONFIG['retry_delay'] = 0.2
    LOGGING_CONFIG['level'] = os.getenv('LOG_LEVEL', 'DEBUG')

if os.getenv('ENVIRONMENT') == 'production':
    LOGGING_CONFIG['enable_file_logging'] = True
