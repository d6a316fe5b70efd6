"""
parlor - chat-agent runtime for multi-vendor LLM bots.
"""

__version__ = "0.1.0"
__logo__ = "🛋️"
