"""Careless Convo: hands-free voice chat with an LLM."""

__version__ = "0.1.0"
