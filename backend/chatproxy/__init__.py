"""Streaming chat proxy for OpenAI-compatible multimodal endpoints."""

__version__ = "1.0.0"
