"""
SilentLine - Services Package

Contains service interfaces and implementations for:
- Triage analysis (external multimodal model)
- Audio containers and image sniffing
- TURN credential issuance

Design Pattern:
    The analyzer defines a Protocol (interface) and one or more implementations.
    The hub is configured with a concrete implementation at startup,
    enabling dependency injection and easy testing/swapping of backends.
"""

from .audio import detect_image_mime, pcm_to_wav
from .triage_analyzer import (
    TriageAnalyzer,
    DummyTriageAnalyzer,
    GeminiTriageAnalyzer,
    create_analyzer,
)
from .turn_credentials import issue_turn_credentials

__all__ = [
    # Analysis
    "TriageAnalyzer",
    "DummyTriageAnalyzer",
    "GeminiTriageAnalyzer",
    "create_analyzer",
    # Media
    "pcm_to_wav",
    "detect_image_mime",
    # Peer media relay
    "issue_turn_credentials",
]
