"""agentlink: drive the Claude CLI agent from a host application.

Spawns the agent in stream-json mode, rebuilds the conversation from its
output, gates tool use through a local approval hook and tracks the files
the agent changes so they can be kept or reverted.
"""

__version__ = "0.1.0"
