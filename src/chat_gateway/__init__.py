"""
Chat Gateway

Streams chat completions from multiple LLM providers while billing credits
incrementally, with an offline spend queue for clients.
"""

__version__ = "1.0.0"
