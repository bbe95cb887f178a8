"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- File type detection and text extraction
- Structure-aware document chunking
- Embedding generation and token accounting
- Per-bot FAISS vector collections
- Retrieval-augmented answering
"""
