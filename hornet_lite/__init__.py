"""
Hornet Lite - Case Documentation Core
=====================================

Local-first core for documenting police cases:
1. OCR of scanned pages (Thai + English) into chunked documents
2. Case records with people, documents and a status workflow
3. Language-model extraction over a case's documents

No server, no database, no auth required.
"""

__version__ = "1.0.0"
