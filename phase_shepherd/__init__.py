"""
Phase Shepherd - phase transition engine for AI-agent issue workflows.

Walks each issue through a configured sequence of phases and decides, after
every phase run, whether to advance, retry, jump back, close, block for a
human or hand routing to a decision agent.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
