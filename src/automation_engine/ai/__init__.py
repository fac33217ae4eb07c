"""Text generation collaborators and the resilient summarizer"""

from .text_generator import TextGenerator, MockTextGenerator
from .processor import AIProcessor, normalize_sentiment
from .summarizer import ResilientSummarizer, EmailSummary, UrgencyLevel, classify_urgency

__all__ = [
    "TextGenerator",
    "MockTextGenerator",
    "AIProcessor",
    "normalize_sentiment",
    "ResilientSummarizer",
    "EmailSummary",
    "UrgencyLevel",
    "classify_urgency"
]
