"""Route modules for the CloudIDE Runner API.

API v1 routes are in the v1/ subdirectory.
The editor WebSocket (gateway), preview proxy and health routes stay at the top level.
"""
