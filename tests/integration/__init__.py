"""
Integration tests for the sniper pipeline.

Subscriber, engine, evaluator, executor and position manager are wired
together against the in-memory chain. The PostgreSQL round trip skips
when DATABASE_URL is unreachable.

Run with:
    pytest tests/integration/ -v -m integration
"""
