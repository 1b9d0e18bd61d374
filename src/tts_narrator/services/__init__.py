"""
tts-narrator Services Layer.

Sits between playback controllers and the synthesis pipeline:
    - narration_service.py: NarrationService (cache-first, coalescing
      access to fragment audio)
"""
from .narration_service import NarrationService

__all__ = ["NarrationService"]
