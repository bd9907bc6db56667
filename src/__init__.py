"""Batch Document Scan Pipeline.

Sequential, rate-limited extraction of photographed business documents
through a remote OCR/AI service, with template resolution, advisory
field validation and operator review before persistence.
"""
