from .engine import ExtractionRetryEngine

__all__ = ["ExtractionRetryEngine"]
