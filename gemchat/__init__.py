"""
Gemchat: client-side turn engine for Gemini chat.
"""

__version__ = "1.0.0"
