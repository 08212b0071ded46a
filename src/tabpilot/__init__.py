"""tabpilot — Gemini Computer Use agent loop for a browser tab."""

__version__ = "0.1.0"
