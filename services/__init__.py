"""
Services package for the conversation practice coach.

This package contains:
- Practice sessions: per-conversation pipeline and the session registry
- Azure AI Foundry: chat completions for the end-of-session report
- Session API: forwards the gesture summary to the conversation backend
"""
