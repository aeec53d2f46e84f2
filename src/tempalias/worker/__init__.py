"""tempalias background work.

Event-loop driven tasks of a session:
- Per-alias deletion timers
- Automatic delivery-log polling
- Periodic status recomputation

Usage:
    # Run the console worker
    tempalias-worker --domain example.com

    # Or as a module
    python -m tempalias.worker.main --domain example.com
"""
