"""
Convoflow
=========

Conversation flow execution with dual-engine routing.

This package provides:
- Flow graph model and interpreter
- Template complexity analysis and engine routing
- Enhanced processing modules with automatic baseline fallback
- Conversation state persistence and metrics
"""

__version__ = "1.0.0"
