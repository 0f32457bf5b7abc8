"""
HookProbe Shared Modules

Shared infrastructure:
- gamerelay: UDP NAT-traversal relay for peer-style multiplayer games
"""

__version__ = '5.4.0'
