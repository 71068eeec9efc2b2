"""
Chat request pipeline.

Billing Gate, Context Compressor, Persistence Writer, Text Sanitizer and the
Citation Aggregator, plus ChatService which wires them around the
StreamingOrchestrator for one request.
"""
