"""
Haddaf client synchronisation core.

Keeps a client's local view of remote, concurrently mutated documents
correct: session/role resolution, live subscriptions and projections,
notification fan-out, and multi-document workflows.
"""

__version__ = "0.1.0"
