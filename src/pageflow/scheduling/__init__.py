from .candidates import CandidateSelector, Cursor
from .recrawl import RecrawlPolicy

__all__ = ["CandidateSelector", "Cursor", "RecrawlPolicy"]
