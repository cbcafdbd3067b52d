"""Chat engine: content parsing, session continuity, and stream relay.

Import concrete modules directly (``agent_console.chat.orchestrator`` and
friends); the gateway package depends on ``chat.content``, so this package
keeps no eager imports.
"""
