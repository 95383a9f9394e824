"""
NJ-Chat relay: streams chat completions from OpenAI-compatible and Ollama
backends to the browser as normalized server-sent events.
"""

__version__ = "0.1.0"
