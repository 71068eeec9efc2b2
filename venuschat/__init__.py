"""
VenusChat - streaming conversation orchestration for a chat front end.

A bounded multi-step tool-calling loop over pluggable LLM providers, with
billing enforcement, citation collection, context compression and
idempotent conversation history.
"""

__version__ = "0.1.0"
