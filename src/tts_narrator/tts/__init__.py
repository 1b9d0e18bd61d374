"""
Synthesis Pipeline Components.

    - synthesizer.py: Speech provider base class and HTTP implementation
    - cache.py: Disk cache of fragment audio with size-capped eviction
    - queue.py: Priority request queue (batching, retries, timeouts)
"""
