"""
Printer adapters package.

Canonical codec implementations:
- elegoo.py    — SDCP frame builder / classifier (WebSocket)
"""
