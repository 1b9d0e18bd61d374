"""
Utility Modules for tts-narrator.

    - timeit.py: Performance measurement utilities
"""
