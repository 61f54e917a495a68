"""Confession matching: invitation protocol and call signaling.

A confessor sends an invitation to an available priest, the priest accepts
or rejects it, and on acceptance both sides negotiate a peer audio call over
a room-scoped signaling channel.
"""
