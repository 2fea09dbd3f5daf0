"""
SDK for the directory assistant.

Provides the model invoker used by the assistant pipeline.
"""

from .openai_client import Generation, ModelInvoker, ProviderError

__all__ = ["Generation", "ModelInvoker", "ProviderError"]
