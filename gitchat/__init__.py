"""
gitchat

Agent tool-orchestration loop for editing a hosted GitHub repository through chat.
"""

__version__ = "0.3.0"
