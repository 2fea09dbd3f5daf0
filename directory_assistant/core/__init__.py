"""
Core modules for the directory assistant.

This package contains admission control, caching, canned answers, context
building, conversation state, usage recording and the pipeline tying them
together.
"""
